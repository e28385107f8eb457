"""
policy-orchestrator — knowledge plane public API.

File: src/policy_orchestrator/knowledge_plane/__init__.py

Purpose
- Rule storage and policy resolution: load rule documents, match them against
  a context, and merge them into an effective policy.

Non-functional requirements
- Matching and resolution are deterministic and safe for concurrent readers.
"""

from policy_orchestrator.knowledge_plane.rule_registry import (
    MARKDOWN_SUFFIXES,
    YAML_SUFFIXES,
    RuleRegistry,
    directive_value_problem,
    load_rule_documents,
    load_rule_file,
    parse_duration_seconds,
    parse_markdown_rule,
    parse_rule_mapping,
    parse_yaml_rule,
    split_front_matter,
    validate_document,
)
from policy_orchestrator.knowledge_plane.rule_resolver import (
    DEFAULT_RULE_ID,
    DOCUMENTED_DIRECTIVES,
    EffectivePolicy,
    FilePolicyGroup,
    PolicyConflict,
    RuleResolver,
    default_directives,
    default_rule_document,
)

__all__ = [
    "DEFAULT_RULE_ID",
    "DOCUMENTED_DIRECTIVES",
    "MARKDOWN_SUFFIXES",
    "YAML_SUFFIXES",
    "EffectivePolicy",
    "FilePolicyGroup",
    "PolicyConflict",
    "RuleRegistry",
    "RuleResolver",
    "default_directives",
    "default_rule_document",
    "directive_value_problem",
    "load_rule_documents",
    "load_rule_file",
    "parse_duration_seconds",
    "parse_markdown_rule",
    "parse_rule_mapping",
    "parse_yaml_rule",
    "split_front_matter",
    "validate_document",
]

"""
policy-orchestrator — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker. Integration tests drive several planes together but
  never reach the network; external tools are replaced by scripted executors
  or the running interpreter.
"""

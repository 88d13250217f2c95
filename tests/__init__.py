"""
Test Suite for the Idea Pipeline

This package contains the tests for the orchestrator components:
- Task model, store, lock manager and change feed
- Transition engine and handlers
- Collaborators: agent, provisioner, build pipeline, notifications
- Surfaces: intake API, CLI, end-to-end orchestrator runs
"""

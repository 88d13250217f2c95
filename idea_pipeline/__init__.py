"""
Idea Pipeline

Task lifecycle orchestrator for the idea-to-shipped-app pipeline.

A human seeds an idea, the agent refines it, a human approves or rejects it,
and on approval the orchestrator provisions a project, drafts its design
document, hands it to the build/deploy pipeline and publishes a preview.

Components:
- task_model: Task entity, statuses and the transition table
- task_store: Typed access to the shared task collection
- lock_manager: Per-task isProcessing lock with startup recovery
- change_feed: Deduplicated stream of task change events
- transition_engine: Status-keyed dispatch over a fixed worker pool
- handlers: Refine Draft, Apply Feedback, Provision & Design,
  Start Development, Reject & Cleanup
- agent_backend / notification_engine / project_provisioner / build_pipeline:
  Thin adapters for the external collaborators
- maintenance: Daily idea generation and rejected-task purge
- intake_api: FastAPI intake surface and shared-secret webhook
"""

__version__ = "0.3.0"

"""Transfer request lifecycle."""

from atcroster.transfers.workflow import TransferWorkflow

__all__ = ["TransferWorkflow"]

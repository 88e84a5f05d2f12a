from dcfleet.runtime.managers.workspaces import PrunePlan, VolumeCopy, WorkspaceCleanup, WorkspaceManager

__all__ = ["PrunePlan", "VolumeCopy", "WorkspaceCleanup", "WorkspaceManager"]

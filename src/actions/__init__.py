"""Engine actions for repository workspaces."""

from actions.tofu import (
    TofuWorkspace,
    TofuInitAction,
    TofuPlanAction,
    TofuApplyAction,
    TofuDestroyAction,
    TofuOutputAction,
    PlanSummary,
)

__all__ = [
    'TofuWorkspace',
    'TofuInitAction',
    'TofuPlanAction',
    'TofuApplyAction',
    'TofuDestroyAction',
    'TofuOutputAction',
    'PlanSummary',
]

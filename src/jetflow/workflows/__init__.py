"""jetflow workflows for complete unfolding runs."""

from jetflow.workflows.jet_flow import (
    PLANES,
    JetFlowConfig,
    JetFlowUnfolder,
    RunOutput,
)

__all__ = [
    'PLANES',
    'JetFlowConfig',
    'JetFlowUnfolder',
    'RunOutput',
]

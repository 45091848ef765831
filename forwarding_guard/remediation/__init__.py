from .lifecycle import BlockLifecycle, BlockOutcome, UnblockOutcome
from .orchestrator import (
    CompromiseResponse,
    IdentityOutcome,
    RemediationReport,
    StepOutcome,
    remediate,
)

__all__ = [
    "BlockLifecycle",
    "BlockOutcome",
    "UnblockOutcome",
    "CompromiseResponse",
    "IdentityOutcome",
    "RemediationReport",
    "StepOutcome",
    "remediate",
]

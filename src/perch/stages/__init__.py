"""Pipeline stages: session, security, and dispatch, outermost first."""

from perch.stages.dispatch import Dispatcher, DispatchStage
from perch.stages.factory import StageDecision, StageKind, StageSlot, decide_stage
from perch.stages.protocol import RequestHandler, Stage, WrapperStage, WrappingStage, walk_chain
from perch.stages.security import Constraint, SecurityConfig, SecurityStage
from perch.stages.session import SessionConfig, SessionStage

__all__ = [
    "Constraint",
    "DispatchStage",
    "Dispatcher",
    "RequestHandler",
    "SecurityConfig",
    "SecurityStage",
    "SessionConfig",
    "SessionStage",
    "Stage",
    "StageDecision",
    "StageKind",
    "StageSlot",
    "WrapperStage",
    "WrappingStage",
    "decide_stage",
    "walk_chain",
]

"""Robotloop: durable execution loop for remote robot plans."""

__version__ = "0.1.0"

from robotloop.config import RobotloopConfig
from robotloop.models import (
    ActResult,
    CycleEntry,
    ExitKind,
    FinalReport,
    PlanParams,
    ReplanResult,
    SessionSaveResult,
)
from robotloop.responses import ResponseType, ResponseVariant, classify_response
from robotloop.controller import PlanCycleController
from robotloop.finalizer import finalize
from robotloop.store import RunStore
from robotloop.timers import InMemoryTimer, StoreTimer
from robotloop.events import EventCollector
from robotloop.client import ApiError, RobotApiClient
from robotloop.starter import StartResult, launch_robot, start_robot

__all__ = [
    "RobotloopConfig",
    "ActResult",
    "CycleEntry",
    "ExitKind",
    "FinalReport",
    "PlanParams",
    "ReplanResult",
    "SessionSaveResult",
    "ResponseType",
    "ResponseVariant",
    "classify_response",
    "PlanCycleController",
    "finalize",
    "RunStore",
    "InMemoryTimer",
    "StoreTimer",
    "EventCollector",
    "ApiError",
    "RobotApiClient",
    "StartResult",
    "launch_robot",
    "start_robot",
]

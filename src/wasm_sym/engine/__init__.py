"""Dual-mode execution engine package."""

from __future__ import annotations

from .explorer import Explorer
from .fuzzer import Fuzzer
from .host import HOST_FUNCTIONS, HOST_MODULE, HostBridge
from .interpreter import Interpreter
from .session import TestCase, TestResult, TestSession
from .solver import ConstraintManager, SolverResult
from .state import TEST_ADDRESS, Domain, MachineState, Mode, Status
from .values import Concrete, Symbolic, Value

__all__ = [
    "HOST_FUNCTIONS",
    "HOST_MODULE",
    "TEST_ADDRESS",
    "Concrete",
    "ConstraintManager",
    "Domain",
    "Explorer",
    "Fuzzer",
    "HostBridge",
    "Interpreter",
    "MachineState",
    "Mode",
    "SolverResult",
    "Status",
    "Symbolic",
    "TestCase",
    "TestResult",
    "TestSession",
    "Value",
]

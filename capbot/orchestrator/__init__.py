"""Error classification, circuit breaking, acquisition attempts and run orchestration.

Public API
----------
* :func:`~capbot.orchestrator.runner.run_once`: one complete run; what
  ``capbot run`` executes on every trigger.
* :class:`~capbot.orchestrator.parallel.ParallelOrchestrator`: runs the
  attempts concurrently under one wall-clock budget.
* :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`: cycles one
  request through its fallback targets.
* :class:`~capbot.orchestrator.circuit_breaker.CircuitBreaker`: per-target
  skip decision persisted in the state document.
* :func:`~capbot.orchestrator.classifier.classify`: raw error payload to
  :class:`~capbot.core.models.ErrorKind`.
* :class:`~capbot.orchestrator.lifecycle.LifecycleManager`: retires old
  instances when a shape class is at its limit.
"""

from capbot.orchestrator.attempt import AcquisitionAttempt
from capbot.orchestrator.circuit_breaker import CircuitBreaker, CircuitState
from capbot.orchestrator.classifier import ClassificationRule, ErrorClassifier, classify
from capbot.orchestrator.lifecycle import LifecycleManager
from capbot.orchestrator.parallel import ParallelOrchestrator, RunReport
from capbot.orchestrator.runner import run_once

__all__ = [
    "AcquisitionAttempt",
    "CircuitBreaker",
    "CircuitState",
    "ClassificationRule",
    "ErrorClassifier",
    "classify",
    "LifecycleManager",
    "ParallelOrchestrator",
    "RunReport",
    "run_once",
]

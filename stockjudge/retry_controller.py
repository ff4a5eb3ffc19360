"""
Generic generate -> gate -> verify -> accept / retry / terminal controller.

Both pipelines run their final text through this loop; they differ only in
three parameters:

  local_gate       cheap pre-check; a failing draft is discarded without
                   spending verifier calls; on the last attempt it goes
                   straight to the terminal policy
  verify           the dual verifier, returning a VerificationResult
  terminal_policy  what to emit once attempts run out:
                     EMIT_ANYWAY -> the last draft, with its failing verdicts
                     SUBSTITUTE  -> fixed safe boilerplate from `fallback`

Attempts are strictly sequential: attempt N+1's prompt carries attempt N's
VerifierFeedback.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generator, List, Optional

from stockjudge.events import PipelineEvent, status
from stockjudge.pipeline_metrics import PipelineMetrics

log = logging.getLogger("stockjudge.retry")

# Hard ceiling on generation attempts; larger requests are clamped.
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class VerifierFeedback:
    """What went wrong last time, handed structurally to the next generation."""

    policy_issues: List[str] = field(default_factory=list)
    consistency_issues: List[str] = field(default_factory=list)
    rewrite_hint: str = ""

    def __bool__(self) -> bool:
        return bool(self.policy_issues or self.consistency_issues or self.rewrite_hint)


@dataclass
class VerificationResult:
    failed: bool
    feedback: VerifierFeedback = field(default_factory=VerifierFeedback)
    details: Dict[str, Any] = field(default_factory=dict)


class TerminalPolicy(str, Enum):
    EMIT_ANYWAY = "emit_anyway"
    SUBSTITUTE = "substitute"


@dataclass
class GuardedOutcome:
    text: str
    attempts: int
    passed: bool
    verification: Optional[VerificationResult] = None
    fallback_used: bool = False


class GuardedGenerator:
    def __init__(
        self,
        *,
        generate: Callable[[int, Optional[VerifierFeedback]], str],
        verify: Callable[[str], VerificationResult],
        local_gate: Optional[Callable[[str], List[str]]] = None,
        terminal_policy: TerminalPolicy = TerminalPolicy.EMIT_ANYWAY,
        fallback: Optional[Callable[[], str]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        generate_stage: str = "generate",
        verify_stage: str = "verify",
        metrics: Optional[PipelineMetrics] = None,
    ):
        if terminal_policy == TerminalPolicy.SUBSTITUTE and fallback is None:
            raise ValueError("SUBSTITUTE policy needs a fallback")
        self._generate = generate
        self._verify = verify
        self._local_gate = local_gate
        self._policy = terminal_policy
        self._fallback = fallback
        self._max_attempts = min(DEFAULT_MAX_ATTEMPTS, max(1, max_attempts))
        self._generate_stage = generate_stage
        self._verify_stage = verify_stage
        self._metrics = metrics

    def _terminal(self, draft: str, attempt: int, result: Optional[VerificationResult]) -> GuardedOutcome:
        if self._policy == TerminalPolicy.SUBSTITUTE:
            log.info("attempts exhausted after %d; substituting safe fallback", attempt)
            return GuardedOutcome(self._fallback(), attempt, False, result, fallback_used=True)
        log.info("attempts exhausted after %d; emitting last draft with failing verdicts", attempt)
        return GuardedOutcome(draft, attempt, False, result)

    def run(self) -> Generator[PipelineEvent, None, GuardedOutcome]:
        """Yield per-attempt status events; the outcome is the generator's return value."""
        feedback: Optional[VerifierFeedback] = None
        draft = ""
        result: Optional[VerificationResult] = None

        for attempt in range(1, self._max_attempts + 1):
            last = attempt == self._max_attempts
            if self._metrics:
                self._metrics.inc_attempt()

            yield status(self._generate_stage, attempt=attempt)
            draft = self._generate(attempt, feedback)

            yield status(self._verify_stage, attempt=attempt)
            gate_issues = self._local_gate(draft) if self._local_gate else []
            if gate_issues:
                log.info("attempt %d rejected by local gate: %s", attempt, gate_issues)
                result = VerificationResult(
                    failed=True,
                    feedback=VerifierFeedback(policy_issues=[f"local_gate:{i}" for i in gate_issues]),
                    details={"local_gate": gate_issues},
                )
                if self._metrics:
                    self._metrics.inc_verifier_failure()
                if last:
                    return self._terminal(draft, attempt, result)
                feedback = result.feedback
                continue

            result = self._verify(draft)
            if not result.failed:
                return GuardedOutcome(draft, attempt, True, result)

            if self._metrics:
                self._metrics.inc_verifier_failure()
            if last:
                return self._terminal(draft, attempt, result)
            feedback = result.feedback

        # max_attempts >= 1 guarantees the loop returns
        return self._terminal(draft, self._max_attempts, result)

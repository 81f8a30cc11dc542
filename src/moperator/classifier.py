# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fallible call into the external label classifier.

The classifier (an LLM behind an HTTP API) lives outside the relay. It is
modelled as an async callable ``classify(email, labels) -> LabelingDecision``
that may raise, hang or return labels the tenant never defined. The wrapper
here bounds it with a timeout and always yields a usable decision, falling
back to the ``catch-all`` label.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .logger import get_logger
from .models import CATCH_ALL_LABEL, EmailSnapshot, Label, LabelingDecision
from .registry import validate_assigned_labels

Classifier = Callable[[EmailSnapshot, list[Label]], Awaitable[LabelingDecision]]

DEFAULT_CLASSIFIER_TIMEOUT = 15.0

logger = get_logger("Classifier")


class ClassifierError(RuntimeError):
    """Raised by classifier implementations that cannot produce a decision."""


@dataclass
class ClassificationResult:
    """Decision handed to the dispatch stage.

    Attributes:
        decision: Labels (always at least one) and the routing reason.
        fallback: True when the classifier failed and catch-all was used.
        error: Failure description when ``fallback`` is True.
    """

    decision: LabelingDecision
    fallback: bool = False
    error: str | None = None


def _fallback(reason: str, error: str | None = None) -> ClassificationResult:
    return ClassificationResult(
        decision=LabelingDecision(labels=[CATCH_ALL_LABEL], reason=reason),
        fallback=True,
        error=error,
    )


async def classify_email(
    classifier: Classifier | None,
    email: EmailSnapshot,
    labels: list[Label],
    timeout: float = DEFAULT_CLASSIFIER_TIMEOUT,
) -> ClassificationResult:
    """Classify ``email`` against the tenant's ``labels``.

    Never raises: timeouts, classifier errors and empty or unknown label sets
    all produce a catch-all decision.
    """
    if classifier is None or not labels:
        return _fallback("No classifier or labels available")
    if len(labels) == 1 and labels[0].id == CATCH_ALL_LABEL:
        return ClassificationResult(
            decision=LabelingDecision(labels=[CATCH_ALL_LABEL], reason="Only catch-all label available")
        )
    try:
        decision = await asyncio.wait_for(classifier(email, labels), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Classifier timed out after %.1fs, using catch-all", timeout)
        return _fallback("Labeling timed out, using catch-all", "Timeout")
    except Exception as exc:
        logger.warning("Classifier failed, using catch-all: %s", exc)
        return _fallback("Labeling failed, using catch-all", str(exc) or exc.__class__.__name__)

    assigned = validate_assigned_labels(decision.labels, labels)
    if assigned == [CATCH_ALL_LABEL] and CATCH_ALL_LABEL not in decision.labels:
        return _fallback("No valid labels returned, using catch-all", "Unknown labels")
    return ClassificationResult(
        decision=LabelingDecision(labels=assigned, reason=decision.reason or "Classified by AI")
    )

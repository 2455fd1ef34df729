"""
Classification rules: raw collaborator results to attempt outcomes.

The engine does not interpret domain-specific results or error text. The
caller supplies a classifier, a callable ``(raw_result, error) -> outcome``
where exactly one of ``raw_result`` and ``error`` is meaningful: ``error`` is
the exception the collaborator raised (or the timeout), ``raw_result`` is
what it returned otherwise.

This module provides the building blocks callers usually combine.

Example:
    >>> classifier = exception_classifier(fatal=(PermissionError,))
    >>> classifier(None, PermissionError("denied"))
    <AttemptOutcome.FATAL_FAILURE: 'fatalFailure'>
"""

from collections.abc import Callable, Collection
from typing import Any

from specforge.collaborators.command import CommandResult
from specforge.enums import AttemptOutcome
from specforge.exceptions import FatalCollaboratorError

Classifier = Callable[[Any, BaseException | None], AttemptOutcome]


def exception_classifier(
    fatal: tuple[type[BaseException], ...] = (),
    on_result: Callable[[Any], AttemptOutcome] | None = None,
) -> Classifier:
    """Classify by exception type; returned results count as success.

    Args:
        fatal: Exception types that are never worth retrying, in addition to
            FatalCollaboratorError.
        on_result: Optional classifier for returned values. Defaults to
            treating every returned value as success.

    Returns:
        A classifier where FatalCollaboratorError and ``fatal`` types map to
        fatalFailure and any other exception (timeouts included) maps to
        transientFailure.
    """
    fatal_types = (FatalCollaboratorError, *fatal)

    def classify(raw_result: Any, error: BaseException | None) -> AttemptOutcome:
        if error is not None:
            if isinstance(error, fatal_types):
                return AttemptOutcome.FATAL_FAILURE
            return AttemptOutcome.TRANSIENT_FAILURE
        if on_result is not None:
            return on_result(raw_result)
        return AttemptOutcome.SUCCESS

    return classify


def exit_code_classifier(fatal_exit_codes: Collection[int] = ()) -> Classifier:
    """Classify CommandResult values by process exit code.

    0 is success, codes in ``fatal_exit_codes`` are fatal, anything else is
    transient. Exceptions follow ``exception_classifier``.
    """
    fatal_codes = frozenset(fatal_exit_codes)

    def on_result(raw_result: Any) -> AttemptOutcome:
        if not isinstance(raw_result, CommandResult):
            return AttemptOutcome.SUCCESS
        if raw_result.returncode == 0:
            return AttemptOutcome.SUCCESS
        if raw_result.returncode in fatal_codes:
            return AttemptOutcome.FATAL_FAILURE
        return AttemptOutcome.TRANSIENT_FAILURE

    return exception_classifier(on_result=on_result)


def describe_error(error: BaseException) -> dict[str, Any]:
    """Opaque error payload stored on a failed attempt."""
    detail: dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, FatalCollaboratorError) and error.detail:
        detail["detail"] = error.detail
    return detail


def describe_result(raw_result: Any) -> dict[str, Any]:
    """Opaque error payload for a returned value classified as a failure."""
    if isinstance(raw_result, CommandResult):
        return raw_result.to_detail()
    if isinstance(raw_result, dict):
        return {"result": raw_result}
    return {"result": repr(raw_result)}

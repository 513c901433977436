"""In-process actions callable from a step's ``action`` field.

An action receives the step's rendered ``with`` parameters and its timeout,
and returns an ``ActionOutcome`` shaped like a finished process so output
extraction treats commands and actions the same way.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from sequencer.errors import TransientStepFailure
from sequencer.models import FailureKind

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


ActionFn = Callable[[dict[str, str], float], ActionOutcome]


def _status_matches(status_code: int, expected: str) -> bool:
    expected = expected.strip().lower()
    if expected.endswith("xx") and len(expected) == 3:
        return str(status_code)[0] == expected[0]
    return any(status_code == int(code) for code in expected.split(",") if code)


def make_health_check(
    transport: httpx.BaseTransport | None = None,
) -> ActionFn:
    """Build the ``health-check`` action.

    Parameters: ``url`` (required), ``path`` (default ``/``),
    ``expected_status`` (default ``2xx``; also ``200`` or ``200,204``).
    Prints ``{"passed", "status_code", "url"}`` as JSON. Connection errors
    and timeouts are transient so a retry count turns the probe into a poll.
    """

    def health_check(params: dict[str, str], timeout: float) -> ActionOutcome:
        base = params.get("url")
        if not base:
            raise ValueError("health-check requires a 'url' parameter")
        url = base.rstrip("/") + "/" + params.get("path", "/").lstrip("/")
        expected = params.get("expected_status", "2xx")

        try:
            with httpx.Client(timeout=timeout, transport=transport) as client:
                response = client.get(url)
        except httpx.TimeoutException as exc:
            raise TransientStepFailure(
                FailureKind.TIMEOUT, f"health check timed out: {url}"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientStepFailure(
                FailureKind.LAUNCH_FAILURE, f"health check could not connect: {exc}"
            ) from exc

        passed = _status_matches(response.status_code, expected)
        logger.info("Health check %s -> %d", url, response.status_code)
        body = {"passed": passed, "status_code": response.status_code, "url": url}
        return ActionOutcome(exit_code=0 if passed else 1, stdout=json.dumps(body))

    return health_check


class ActionRegistry:
    def __init__(self, include_builtins: bool = True) -> None:
        self._actions: dict[str, ActionFn] = {}
        if include_builtins:
            self.register("health-check", make_health_check())

    def register(self, name: str, fn: ActionFn) -> None:
        self._actions[name] = fn

    def get(self, name: str) -> ActionFn | None:
        return self._actions.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    @property
    def names(self) -> list[str]:
        return sorted(self._actions)

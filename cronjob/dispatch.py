"""
Dispatch resolution: turns a job's target and payload into a concrete outbound request.

Targets map to ingress paths:
- service:  /{name}/{handler}
- object:   /{name}/{key}/{handler}
- workflow: /{name}/{key}/{handler}

Payloads map to request bodies: static JSON is sent unchanged, scripts are evaluated
by a `ScriptEvaluator` on every run. Jobs without a payload are called with an empty body.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import quote

from jinja2 import StrictUndefined, Undefined
from jinja2.sandbox import SandboxedEnvironment
from pydantic_core import PydanticSerializationError, to_jsonable_python

from cronjob.errors import ScriptError
from cronjob.models import JsonPayload, Payload, ServiceTarget, Target

logger = logging.getLogger("Dispatch")

CONTENT_TYPE_JSON = "application/json"


@dataclass
class OutboundRequest:
    """A resolved call to a target handler."""

    target: Target
    body: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    @property
    def path(self) -> str:
        return target_path(self.target)


def target_path(target: Target) -> str:
    if isinstance(target, ServiceTarget):
        parts = [target.name, target.handler]
    else:
        parts = [target.name, target.key, target.handler]
    return "/" + "/".join(quote(part, safe="") for part in parts)


class ScriptEvaluator:
    """
    Evaluates payload scripts as sandboxed Jinja expressions.

    Scripts are single expressions such as::

        {"date": (now - timedelta(days=1)).strftime("%Y-%m-%d"), "job": key}

    The sandbox blocks access to private attributes and unsafe callables, and any
    undefined name is an error. The evaluator holds no per-call state, so one instance
    can be shared by every job.
    """

    def __init__(self, globals: Optional[dict[str, Any]] = None):
        self.environment = SandboxedEnvironment(undefined=StrictUndefined)
        self.environment.globals.update({"timedelta": timedelta})
        if globals:
            self.environment.globals.update(globals)

    def evaluate(self, source: str, variables: Optional[dict[str, Any]] = None) -> Any:
        """
        Evaluate `source` and convert the result to a JSON-compatible value.

        Raises:
            ScriptError: If the script fails to compile or evaluate, uses an undefined or
                unsafe name, or returns a value that has no JSON representation.
        """
        try:
            expression = self.environment.compile_expression(
                source, undefined_to_none=False
            )
            result = expression(**(variables or {}))
        except Exception as e:
            raise ScriptError(f"Failed to evaluate payload script: {e}") from e
        if isinstance(result, Undefined):
            raise ScriptError("Payload script evaluated to an undefined or unsafe name")
        try:
            return to_jsonable_python(result, inf_nan_mode="constants")
        except PydanticSerializationError as e:
            raise ScriptError(f"Payload script result is not JSON serializable: {e}") from e


class DispatchResolver:
    def __init__(self, evaluator: ScriptEvaluator):
        self.evaluator = evaluator

    def render_payload(
        self, payload: Optional[Payload], variables: Optional[dict[str, Any]] = None
    ) -> Optional[str]:
        """Render the payload to JSON text, or None when the job has no payload."""
        if payload is None:
            return None
        if isinstance(payload, JsonPayload):
            return json.dumps(payload.content, allow_nan=False)
        value = self.evaluator.evaluate(payload.content, variables)
        try:
            return json.dumps(value, allow_nan=False)
        except ValueError as e:
            raise ScriptError(f"Payload script result is not valid JSON: {e}") from e

    def build_request(
        self,
        target: Target,
        body: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> OutboundRequest:
        headers = {}
        if body is not None:
            headers["Content-Type"] = CONTENT_TYPE_JSON
        request = OutboundRequest(
            target=target,
            body=body,
            headers=headers,
            idempotency_key=idempotency_key,
        )
        logger.debug(f"Resolved request to {request.path} (idempotency key: {idempotency_key})")
        return request

"""
HTTP ingress for keyed objects bound to a runtime.

Routes:
- POST /{service}/{key}/{handler}: invoke a handler; the JSON body is the handler input.
  An optional Idempotency-Key header deduplicates retried requests.
- GET /api/runtime-status: invocation counts by status.

Handler failures are returned as {"message": ..., "code": ...} with the error code as
HTTP status; failures that exhausted their retries are returned as 500.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from cronjob.errors import HandlerError, InvalidArgument, NotFound, TerminalError
from cronjob.runtime import Runtime
from cronjob.transport import IDEMPOTENCY_HEADER

logger = logging.getLogger("Api")


def reject_constant(name: str):
    raise ValueError(f"{name} is not a valid JSON value")


async def invoke_handler(request: Request):
    runtime: Runtime = request.app.state.runtime
    service = request.path_params["service"]
    key = request.path_params["key"]
    handler = request.path_params["handler"]

    spec = runtime.handler_spec(service, handler)
    if spec.internal:
        raise NotFound(f"Handler {service}/{handler} not found")

    argument = None
    body = await request.body()
    if body:
        try:
            argument = json.loads(body, parse_constant=reject_constant)
        except ValueError as e:
            raise InvalidArgument(f"Request body is not valid JSON: {e}") from e
    if spec.input_model is not None and argument is None:
        raise InvalidArgument(f"Handler {service}/{handler} requires a JSON body")

    idempotency_key = request.headers.get(IDEMPOTENCY_HEADER)
    logger.info(f"Invoking {service}/{key}/{handler} (idempotency key: {idempotency_key})")
    result = await runtime.invoke(
        service, key, handler, argument, idempotency_key=idempotency_key
    )
    if result is None:
        return Response(status_code=200)
    return JSONResponse(result)


async def get_runtime_status(request: Request):
    return JSONResponse(request.app.state.runtime.status())


async def handler_error_response(request: Request, exc: HandlerError):
    code = exc.code if isinstance(exc, TerminalError) else 500
    if not 400 <= code <= 599:
        code = 500
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"message": exc.message, "code": code}, status_code=code)


def api_routes(api: FastAPI, runtime: Runtime):
    api.state.runtime = runtime
    api.add_route("/api/runtime-status", get_runtime_status, methods=["GET"])
    api.add_route("/{service}/{key}/{handler}", invoke_handler, methods=["POST"])
    api.add_exception_handler(HandlerError, handler_error_response)
    return api


def create_app(runtime: Runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(api: FastAPI):
        task = asyncio.create_task(runtime.run_forever())
        try:
            yield
        finally:
            runtime.stop()
            await task
            await runtime.transport.aclose()

    return api_routes(FastAPI(title="Cron Job Service", lifespan=lifespan), runtime)

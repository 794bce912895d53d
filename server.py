#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Checkout Core Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
import uuid

from absl import app as absl_app
import config
from exceptions import CheckoutError
from exceptions import RateLimitedError
from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from routes.checkout import router as checkout_router
from routes.operations import router as operations_router
from routes.settings import router as settings_router
from routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

config.configure_logging(logging.INFO)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

app = FastAPI(
    title="Checkout Core Service",
    version=config.SERVER_VERSION,
    description=(
        "Checkout orchestration: provider routing, payment idempotency,"
        " reconciliation and inventory reservations"
    ),
    lifespan=config.lifespan,
)


def _error_response(
    status_code: int, message: str, code: str, headers=None
) -> JSONResponse:
  return JSONResponse(
      status_code=status_code,
      content={"success": False, "error": message, "code": code},
      headers=headers,
  )


@app.exception_handler(CheckoutError)
async def checkout_exception_handler(request: Request, exc: CheckoutError):
  """Converts checkout exceptions to JSON error responses."""
  logger.info(
      "%s %s -> %s %s: %s",
      request.method,
      request.url.path,
      exc.status_code,
      exc.code,
      exc.message,
  )
  headers = None
  if isinstance(exc, RateLimitedError) and exc.retry_after:
    headers = {"Retry-After": str(exc.retry_after)}
  return _error_response(exc.status_code, exc.message, exc.code, headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
  """Reports malformed bodies as bad requests in the common error shape."""
  del request  # Unused.
  errors = exc.errors()
  message = "Invalid request"
  if errors:
    location = ".".join(str(part) for part in errors[0].get("loc", ()))
    message = f"Invalid request: {location}: {errors[0].get('msg')}"
  return _error_response(400, message, "BAD_REQUEST")


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
  """Tags the request, its log lines and its response with a request id."""
  request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
  token = config.correlation_id_var.set(request_id)
  try:
    response = await call_next(request)
  finally:
    config.correlation_id_var.reset(token)
  response.headers[REQUEST_ID_HEADER] = request_id
  return response


@app.get("/health", operation_id="health")
async def health() -> dict:
  return {"ok": True}


app.include_router(checkout_router)
app.include_router(operations_router)
app.include_router(settings_router)
app.include_router(webhooks_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Checkout Core Server."""
  del argv  # Unused.

  if (
      config.FLAGS.db_path is None and config.FLAGS.database_url is None
  ) or config.FLAGS.port is None:
    logger.error("--port and one of --db_path or --database_url are required.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  if not config.FLAGS.admin_api_key:
    logger.warning("--admin_api_key is unset; admin endpoints will reject")

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


if __name__ == "__main__":
  absl_app.run(main)

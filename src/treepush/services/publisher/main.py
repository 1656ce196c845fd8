"""
Publisher Cloud Run service entry point.

FastAPI application that receives upload jobs from a queue push subscription
and runs each one to completion before answering, so the queue sees the
job's real outcome and redelivers only what is worth retrying.
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Tuple

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from treepush.core.config import settings
from treepush.core.logging import job_id_context, setup_logging
from treepush.services.publisher.exceptions import ErrorKind, PublishError
from treepush.services.publisher.job_runner import JobRunner

setup_logging()

logger = logging.getLogger(__name__)

# Validation and access problems are not fixed by redelivery; rate limits are
ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.AUTH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_ACCESSIBLE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.TRANSFER: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.UPLOAD: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PROVISIONING: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.REMOTE: status.HTTP_502_BAD_GATEWAY,
}

app = FastAPI(
    title="Publisher Service",
    description="Downloads zip archives and publishes their text files to GitHub repositories",
    version=settings.SERVICE_VERSION,
)

runner = JobRunner(settings)


class InvalidMessage(ValueError):
    """Raised when a pushed request body cannot be turned into a job message."""


def unwrap_push_message(body: Any) -> Tuple[Dict[str, Any], str]:
    """Extract the job payload and message id from a request body.

    Accepts either the job JSON itself or a Pub/Sub push envelope whose
    ``message.data`` holds the base64-encoded job JSON.

    Args:
        body: Parsed JSON request body

    Returns:
        Tuple of (job payload, message id)

    Raises:
        InvalidMessage: If the body is not a JSON object or the envelope is malformed
    """
    if not isinstance(body, dict):
        raise InvalidMessage("Request body must be a JSON object")

    envelope = body.get("message")
    if not isinstance(envelope, dict):
        return body, str(body.get("messageId") or "unknown")

    message_id = str(envelope.get("messageId") or envelope.get("message_id") or "unknown")
    data = envelope.get("data")
    if not data:
        raise InvalidMessage("Push envelope has no data")

    try:
        payload = json.loads(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError) as e:
        raise InvalidMessage(f"Push envelope data is not base64 JSON: {e}") from e

    if not isinstance(payload, dict):
        raise InvalidMessage("Job payload must be a JSON object")
    return payload, message_id


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy", "service": settings.SERVICE_NAME}


@app.post("/")
async def handle_job(request: Request):
    """
    Handle an upload job pushed by the queue.

    Returns:
        200: Job completed, body is the JobResult
        400: Body is not a job message
        422: Job is invalid or the credential/repository is unusable
        429: Remote store rate limit outlasted local retries
        502: Download, provisioning or upload failed
        500: Unexpected error
    """
    try:
        body = await request.json()
        payload, message_id = unwrap_push_message(body)
    except ValueError as e:
        logger.warning(
            "Failed to parse job message",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error_kind": "bad_request", "error": f"Invalid request: {e}"},
        )

    token = job_id_context.set(message_id)
    try:
        logger.info("Job message received", extra={"message_id": message_id})
        result = await runner.run(payload)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_dict())

    except PublishError as e:
        return JSONResponse(
            status_code=ERROR_STATUS.get(e.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content={
                "success": False,
                "error_kind": e.kind.value,
                "retriable": e.retriable,
                "error": str(e),
            },
        )
    except Exception:
        # JobRunner has already logged the traceback
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error_kind": "internal", "error": "Internal server error"},
        )
    finally:
        job_id_context.reset(token)


@app.on_event("startup")
async def startup_event():
    """Log service startup."""
    logger.info(
        "Publisher service started",
        extra={
            "environment": settings.ENV,
            "service_version": settings.SERVICE_VERSION,
            "github_api_url": settings.GITHUB_API_URL,
            "publish_strategy": settings.PUBLISH_STRATEGY,
            "scratch_root": str(settings.scratch_root),
        },
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Log service shutdown."""
    logger.info("Publisher service shutting down")


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)

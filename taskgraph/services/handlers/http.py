"""API_CALL step handler - outbound HTTP requests via httpx."""

from typing import Any, Dict, Optional

import httpx

from taskgraph.core.logging import get_logger
from taskgraph.services.execution.errors import HandlerError
from taskgraph.services.execution.models import StepResult

logger = get_logger(__name__)

_BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")


async def handle_api_call(
    config: Dict[str, Any],
    context: Dict[str, Any],
    client: Optional[httpx.AsyncClient] = None,
    default_timeout: float = 30.0,
) -> StepResult:
    """Handle API_CALL step execution.

    Config:
        method: HTTP method (default GET)
        url: Request URL (required)
        headers: dict of request headers
        params: dict of query parameters
        json: JSON body for POST/PUT/PATCH/DELETE
        timeout: request timeout in seconds
        target: optional context key to nest the output under

    Args:
        config: Resolved step config
        context: Execution context snapshot
        client: Shared AsyncClient; a short-lived one is created if None
        default_timeout: Timeout when the config does not set one

    Returns:
        StepResult with {"status_code", "body"}

    Raises:
        HandlerError: Retryable on transport errors and 5xx, not retryable on 4xx
    """
    method = str(config.get("method", "GET")).upper()
    url = config.get("url")
    if not url:
        raise HandlerError("API_CALL requires a 'url'", retryable=False)

    kwargs: Dict[str, Any] = {
        "headers": config.get("headers") or {},
        "params": config.get("params") or None,
        "timeout": float(config.get("timeout", default_timeout)),
    }
    if method in _BODY_METHODS and config.get("json") is not None:
        kwargs["json"] = config["json"]

    logger.info("[API Call] Executing", method=method, url=url)

    try:
        if client is not None:
            response = await client.request(method, url, **kwargs)
        else:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise HandlerError(f"Request timed out: {url}") from e
    except httpx.HTTPError as e:
        raise HandlerError(f"Request failed: {e}") from e

    try:
        body = response.json()
    except ValueError:
        body = response.text

    if response.status_code >= 500:
        raise HandlerError(f"Server error {response.status_code} from {url}")
    if response.status_code >= 400:
        raise HandlerError(f"Client error {response.status_code} from {url}", retryable=False)

    output = {"status_code": response.status_code, "body": body}
    target = config.get("target")
    patch = {target: output} if target else {}
    return StepResult(output=output, context_patch=patch)

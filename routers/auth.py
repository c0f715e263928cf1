import hmac
import logging
from typing import Callable, Tuple

from fastapi import HTTPException, Request


SECRET_HEADER = "x-job-secret"
INGRESS_HEADER = "x-ingress-path"


def is_proxy_authenticated_request(request: Request) -> bool:
    """Calls routed through the supervisor's ingress were authenticated upstream."""
    return bool(request.headers.get(INGRESS_HEADER, "").strip())


def extract_secret(request: Request) -> Tuple[str, str]:
    """Return the run-control secret a caller sent and where it was found.

    Dashboards send the ``x-job-secret`` header, scripted clients a bearer
    token, and event polling from a browser tab may only manage ``?secret=``.
    """
    header_secret = request.headers.get(SECRET_HEADER, "").strip()
    if header_secret:
        return header_secret, "header"

    scheme, _, token = request.headers.get("authorization", "").strip().partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip(), "bearer"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    return "", "missing"


def ensure_request_authorized(
    request: Request,
    job_secret: str,
    logger: logging.Logger,
    *,
    context_path: str = "",
) -> str:
    """Gate run control, checkpoint and credential endpoints behind the job secret.

    Returns how the caller was admitted; raises 401 otherwise.
    """
    endpoint = context_path or request.url.path
    if not job_secret:
        return "not_required"

    if is_proxy_authenticated_request(request):
        logger.debug("Auth bypass on %s via ingress", endpoint)
        return "ingress"

    provided, source = extract_secret(request)
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), job_secret.encode("utf-8")):
        logger.warning("Unauthorized on %s (source=%s)", endpoint, source)
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source


def make_auth_guard(job_secret: str, logger: logging.Logger) -> Callable[[Request], str]:
    """Bind the secret and logger once for every endpoint of a router."""

    def guard(request: Request) -> str:
        return ensure_request_authorized(request, job_secret, logger)

    return guard

"""ADT REST API utilities.

This module provides the HTTP client used to talk to the ABAP Development Tools
REST API, helpers that thread the stateful session (cookies, CSRF token, session
headers) through every request, and parsers/builders for the XML documents the
workflow exchanges with the backend.
"""

import asyncio
import base64
import logging
import re
import uuid
import xml.etree.ElementTree as ET
from typing import Dict, Any, Optional, List, Tuple
from urllib.parse import quote
from xml.sax.saxutils import escape, quoteattr

import aiohttp

from .types import (
    ActivationResult,
    CheckMessage,
    CheckResult,
    SessionState,
    ValidationReport,
)

logger = logging.getLogger(__name__)

ADTCORE_NS = "http://www.sap.com/adt/core"
CHKRUN_NS = "http://www.sap.com/adt/checkrun"

CSRF_HEADER = "x-csrf-token"
DISCOVERY_PATH = "/sap/bc/adt/core/discovery"
ACTIVATION_PATH = "/sap/bc/adt/activation"
CHECKRUN_PATH = "/sap/bc/adt/checkruns"
DELETION_PATH = "/sap/bc/adt/deletion/delete"


class AdtHttpClient:
    """HTTP client for ADT REST API operations.

    Provides connection pooling, retry with exponential backoff and a
    standardized result dict. Cookies are never kept by the client itself: they
    travel in the caller's ``SessionState`` so that a session can be resumed by a
    later, independent invocation.

    Only idempotent methods are retried. A lock, create or activate POST that
    reached the backend must not be sent twice.

    Example:
        async with AdtHttpClient() as client:
            result = await client.request("GET", url, headers=headers)
            body = result.get("data")
    """

    def __init__(
        self,
        total_connections: int = 20,
        per_host_connections: int = 10,
        dns_cache_ttl: int = 300,
        request_timeout: int = 60,
        max_retries: int = 2,
        retry_backoff_factor: float = 0.5,
        retry_statuses: Optional[List[int]] = None,
        retry_methods: Optional[List[str]] = None,
        verify_ssl: bool = True,
    ):
        """Initialize the AdtHttpClient.

        Args:
            total_connections: Total connection pool limit
            per_host_connections: Per-host connection limit
            dns_cache_ttl: DNS cache TTL in seconds
            request_timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts
            retry_backoff_factor: Exponential backoff factor for retries
            retry_statuses: HTTP status codes that should trigger retries
            retry_methods: HTTP methods that may be retried
            verify_ssl: Whether to verify the backend's TLS certificate
        """
        self.total_connections = total_connections
        self.per_host_connections = per_host_connections
        self.dns_cache_ttl = dns_cache_ttl
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_backoff_factor = retry_backoff_factor
        self.retry_statuses = retry_statuses or [429, 500, 502, 503, 504]
        self.retry_methods = [m.upper() for m in (retry_methods or ["GET", "HEAD"])]
        self.verify_ssl = verify_ssl

        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    async def __aenter__(self) -> "AdtHttpClient":
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._cleanup_session()

    async def _initialize_session(self) -> None:
        """Initialize the HTTP session with connection pooling."""
        if self._session is not None:
            return

        self._connector = aiohttp.TCPConnector(
            limit=self.total_connections,
            limit_per_host=self.per_host_connections,
            ttl_dns_cache=self.dns_cache_ttl,
            use_dns_cache=True,
            keepalive_timeout=30,
            ssl=None if self.verify_ssl else False,
        )

        timeout = aiohttp.ClientTimeout(total=float(self.request_timeout))

        self._session = aiohttp.ClientSession(
            connector=self._connector,
            timeout=timeout,
            cookie_jar=aiohttp.DummyCookieJar(),
            raise_for_status=False,  # We handle status codes manually
        )

        logger.debug(
            f"Initialized AdtHttpClient session with {self.total_connections} total connections, "
            f"{self.per_host_connections} per-host connections"
        )

    async def _cleanup_session(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

        if self._connector:
            await self._connector.close()
            self._connector = None

        logger.debug("Cleaned up AdtHttpClient session")

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """Make an HTTP request with retry logic and standardized error handling.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            url: Request URL
            headers: Optional request headers
            params: Optional query parameters
            data: Optional request body
            **kwargs: Additional arguments passed to aiohttp

        Returns:
            Dictionary with standardized response format:
            {
                "success": bool,
                "data": Optional[str],         # Response body on success
                "error": Optional[str],        # Present on failure
                "status_code": int,            # HTTP status code, 0 if unreachable
                "raw_response": Optional[str], # Raw response text
                "headers": Dict[str, str],     # Lower-cased response headers
                "set_cookies": List[str],      # Every Set-Cookie header value
                "connection_error": bool,      # Present when no response arrived
            }
        """
        if not self._session:
            raise RuntimeError(
                "AdtHttpClient session not initialized. Use 'async with' context manager."
            )

        method = method.upper()
        retries = self.max_retries if method in self.retry_methods else 0
        last_exception: Optional[BaseException] = None

        for attempt in range(retries + 1):
            if attempt > 0:
                delay = self.retry_backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    f"Retrying request after {delay:.2f}s delay (attempt {attempt + 1}/{retries + 1})"
                )
                await asyncio.sleep(delay)

            request_kwargs: Dict[str, Any] = {}
            if headers is not None:
                request_kwargs["headers"] = headers
            if params is not None:
                request_kwargs["params"] = params
            if data is not None:
                request_kwargs["data"] = data
            request_kwargs.update(kwargs)

            try:
                async with self._session.request(
                    method=method, url=url, **request_kwargs
                ) as response:
                    response_text = await response.text()
                    status_code = response.status

                    logger.debug(f"{method} {url} -> {status_code}")

                    if attempt < retries and status_code in self.retry_statuses:
                        logger.warning(
                            f"Request failed with status {status_code}, will retry"
                        )
                        continue

                    result = process_adt_response(response_text, status_code)
                    result["status_code"] = status_code
                    result["raw_response"] = response_text
                    result["headers"] = {
                        k.lower(): v for k, v in response.headers.items()
                    }
                    result["set_cookies"] = list(
                        response.headers.getall("Set-Cookie", [])
                    )
                    return result

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                logger.warning(f"HTTP client error on attempt {attempt + 1}: {e}")

        error_msg = f"Request failed after {retries + 1} attempts"
        if last_exception:
            error_msg += f": {str(last_exception) or type(last_exception).__name__}"

        return {
            "success": False,
            "error": error_msg,
            "status_code": 0,
            "raw_response": None,
            "headers": {},
            "set_cookies": [],
            "connection_error": True,
        }

    async def get(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("DELETE", url, **kwargs)


def process_adt_response(response_text: str, status_code: int) -> Dict[str, Any]:
    """Turn a response body and status into the standardized result dict."""
    if 200 <= status_code < 300:
        return {"success": True, "data": response_text}

    _, message = extract_exception(response_text)
    if message:
        error = f"HTTP {status_code}: {message}"
    elif response_text:
        error = f"HTTP {status_code}: {response_text[:500]}"
    else:
        error = f"HTTP {status_code}"
    return {"success": False, "error": error}


# Session threading


def new_session_id() -> str:
    return uuid.uuid4().hex


def build_session_headers(
    session: SessionState,
    accept: Optional[str] = None,
    content_type: Optional[str] = None,
    client: Optional[str] = None,
    language: Optional[str] = None,
    authorization: Optional[str] = None,
) -> Dict[str, str]:
    """Build the headers that tie a request to its stateful backend session."""
    headers = {
        "sap-adt-connection-id": session.session_id,
        "sap-adt-request-id": uuid.uuid4().hex,
        "x-sap-adt-sessiontype": "stateful",
        "Accept": accept or "*/*",
    }
    if authorization:
        headers["Authorization"] = authorization
    if session.csrf_token:
        headers[CSRF_HEADER] = session.csrf_token
    if session.cookies:
        headers["Cookie"] = session.cookies
    if content_type:
        headers["Content-Type"] = content_type
    if client:
        headers["sap-client"] = str(client)
    if language:
        headers["sap-language"] = language
    return headers


def parse_set_cookies(set_cookies: List[str]) -> Dict[str, str]:
    """Extract name/value pairs from Set-Cookie header values"""
    cookies = {}
    for header in set_cookies:
        pair = header.split(";", 1)[0].strip()
        if "=" in pair:
            name, value = pair.split("=", 1)
            cookies[name.strip()] = value.strip()
    return cookies


def apply_response_to_session(
    session: SessionState, result: Dict[str, Any]
) -> SessionState:
    """Return the session as updated by a response's cookies and CSRF token.

    The input session is left untouched. When the response changes nothing the
    same instance is returned.
    """
    cookies = parse_set_cookies(result.get("set_cookies") or [])
    token = (result.get("headers") or {}).get(CSRF_HEADER)
    if token and token.lower() in ("required", "fetch"):
        token = None

    changed_cookies = {
        k: v for k, v in cookies.items() if session.cookie_store.get(k) != v
    }
    if not changed_cookies and (token is None or token == session.csrf_token):
        return session
    return session.with_updates(cookie_store=changed_cookies, csrf_token=token)


def csrf_token_required(result: Dict[str, Any]) -> bool:
    """Whether the backend rejected a request for a missing or stale CSRF token"""
    headers = result.get("headers") or {}
    return (
        result.get("status_code") == 403
        and str(headers.get(CSRF_HEADER, "")).lower() == "required"
    )


# XML parsing


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag.split(":")[-1]


def _attr(element: ET.Element, name: str) -> Optional[str]:
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return None


def _parse_xml(text: Optional[str]) -> Optional[ET.Element]:
    if not text or not text.strip().startswith("<"):
        return None
    try:
        return ET.fromstring(text)
    except ET.ParseError as e:
        logger.debug(f"Response is not well-formed XML: {e}")
        return None


def _find_all(root: ET.Element, name: str) -> List[ET.Element]:
    return [element for element in root.iter() if _local(element.tag) == name]


def _find_text(root: ET.Element, name: str) -> Optional[str]:
    for element in root.iter():
        if _local(element.tag) == name:
            return (element.text or "").strip()
    return None


def extract_exception(text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Read type and message out of an ``exc:exception`` document.

    Returns:
        (exception type, message), both None when the body is not an exception
    """
    root = _parse_xml(text)
    if root is None or _local(root.tag) != "exception":
        return None, None

    exception_type = None
    for element in root:
        if _local(element.tag) == "type":
            exception_type = _attr(element, "id") or (element.text or "").strip() or None

    message = _find_text(root, "localizedMessage") or _find_text(root, "message")
    return exception_type, message or None


def parse_lock_handle(text: Optional[str]) -> Optional[str]:
    root = _parse_xml(text)
    if root is None:
        return None
    return _find_text(root, "LOCK_HANDLE") or None


def parse_validation_response(text: Optional[str]) -> ValidationReport:
    """Parse the response of an object name validation.

    The backend answers either with ``asx:abap`` data (``CHECK_RESULT`` is ``X``
    when the name is acceptable) or with an ``exc:exception`` document.
    """
    root = _parse_xml(text)
    if root is None:
        # An empty answer means nothing objected to the name
        return ValidationReport(valid=True)

    if _local(root.tag) == "exception":
        exception_type, message = extract_exception(text)
        return ValidationReport(
            valid=False,
            severity="ERROR",
            message=message,
            exception_type=exception_type,
        )

    check_result = _find_text(root, "CHECK_RESULT")
    severity = _find_text(root, "SEVERITY") or None
    message = _find_text(root, "SHORT_TEXT") or _find_text(root, "LONG_TEXT") or None
    if check_result is None:
        return ValidationReport(valid=True, severity=severity, message=message)
    return ValidationReport(
        valid=check_result.upper() == "X", severity=severity, message=message
    )


_LINE_PATTERN = re.compile(r"#start=(\d+)")


def parse_check_run_report(text: Optional[str]) -> CheckResult:
    """Parse a ``chkrun:checkRunReports`` document into a CheckResult.

    A report that was not processed counts as failed even without messages.
    No report at all counts as passed.
    """
    root = _parse_xml(text)
    if root is None:
        return CheckResult(passed=True)

    errors: List[CheckMessage] = []
    warnings: List[CheckMessage] = []
    processed = True

    for report in _find_all(root, "checkReport"):
        status = _attr(report, "status")
        if status and status != "processed":
            processed = False
            status_text = _attr(report, "statusText")
            if status_text:
                errors.append(CheckMessage(type="E", text=status_text))

        for message in _find_all(report, "checkMessage"):
            uri = _attr(message, "uri")
            line_match = _LINE_PATTERN.search(uri or "")
            entry = CheckMessage(
                type=(_attr(message, "type") or "E").upper(),
                text=_attr(message, "shortText") or "",
                line=int(line_match.group(1)) if line_match else None,
                uri=uri,
            )
            if entry.type in ("E", "A", "X"):
                errors.append(entry)
            else:
                warnings.append(entry)

    return CheckResult(passed=processed and not errors, errors=errors, warnings=warnings)


def parse_activation_response(text: Optional[str]) -> ActivationResult:
    """Parse a ``chkl:messages`` activation result.

    Warnings and infos are formatted as ``"<type>: <text>"``.
    """
    root = _parse_xml(text)
    if root is None:
        return ActivationResult(activated=True)

    errors: List[str] = []
    warnings: List[str] = []
    for message in _find_all(root, "msg"):
        message_type = (_attr(message, "type") or "").upper()
        message_text = _find_text(message, "txt") or _find_text(message, "shortText") or ""
        if message_type in ("E", "A"):
            errors.append(message_text)
        elif message_type in ("W", "I"):
            warnings.append(f"{message_type}: {message_text}")

    properties = _find_all(root, "properties")
    if properties:
        flags = properties[0]
        activated = (_attr(flags, "activationExecuted") or "").lower() == "true"
        checked = (_attr(flags, "checkExecuted") or "").lower() == "true"
        generated = (_attr(flags, "generationExecuted") or "").lower() == "true"
    else:
        activated = not errors
        checked = generated = False

    return ActivationResult(
        activated=activated and not errors,
        checked=checked,
        generated=generated,
        errors=errors,
        warnings=warnings,
    )


# XML builders and URIs


def encode_object_name(name: str) -> str:
    """Lower-case and percent-encode a name for use as a URI segment"""
    return quote(name.lower(), safe="")


def build_object_references_xml(references: List[Tuple[str, str]]) -> str:
    """Build an object reference list from (uri, name) pairs"""
    entries = "".join(
        f"<adtcore:objectReference adtcore:uri={quoteattr(uri)} adtcore:name={quoteattr(name)}/>"
        for uri, name in references
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<adtcore:objectReferences xmlns:adtcore="{ADTCORE_NS}">'
        f"{entries}"
        "</adtcore:objectReferences>"
    )


def build_check_run_xml(
    uri: str,
    version: str = "inactive",
    content: Optional[str] = None,
    artifact_uri: Optional[str] = None,
) -> str:
    """Build a check run request, embedding proposed source when given"""
    artifacts = ""
    if content is not None:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        artifacts = (
            "<chkrun:artifacts>"
            f'<chkrun:artifact chkrun:contentType="text/plain; charset=utf-8" '
            f"chkrun:uri={quoteattr(artifact_uri or uri)}>"
            f"<chkrun:content>{encoded}</chkrun:content>"
            "</chkrun:artifact>"
            "</chkrun:artifacts>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<chkrun:checkObjectList xmlns:adtcore="{ADTCORE_NS}" xmlns:chkrun="{CHKRUN_NS}">'
        f"<chkrun:checkObject adtcore:uri={quoteattr(uri)} chkrun:version={quoteattr(version)}>"
        f"{artifacts}"
        "</chkrun:checkObject>"
        "</chkrun:checkObjectList>"
    )


def build_deletion_xml(uri: str, transport_request: Optional[str] = None) -> str:
    transport = ""
    if transport_request:
        transport = f"<del:transportNumber>{escape(transport_request)}</del:transportNumber>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<del:deletionRequest xmlns:del="http://www.sap.com/adt/deletion" '
        f'xmlns:adtcore="{ADTCORE_NS}">'
        f"<del:object adtcore:uri={quoteattr(uri)}>{transport}</del:object>"
        "</del:deletionRequest>"
    )


def build_creation_xml(
    root_element: str,
    namespace: str,
    adt_type: str,
    name: str,
    description: str,
    package_name: Optional[str],
    language: str = "EN",
    responsible: Optional[str] = None,
    container_uri: Optional[str] = None,
    container_name: Optional[str] = None,
) -> str:
    """Build a minimal creation document shared by all object kinds"""
    prefix = root_element.split(":", 1)[0]
    attributes = [
        f"xmlns:{prefix}={quoteattr(namespace)}",
        f'xmlns:adtcore="{ADTCORE_NS}"',
        f"adtcore:description={quoteattr(description)}",
        f"adtcore:name={quoteattr(name)}",
        f"adtcore:type={quoteattr(adt_type)}",
        f"adtcore:masterLanguage={quoteattr(language)}",
    ]
    if responsible:
        attributes.append(f"adtcore:responsible={quoteattr(responsible)}")

    children = ""
    if container_uri:
        children += (
            f"<adtcore:containerRef adtcore:uri={quoteattr(container_uri)} "
            f"adtcore:name={quoteattr(container_name or '')}/>"
        )
    if package_name:
        children += f"<adtcore:packageRef adtcore:name={quoteattr(package_name)}/>"

    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<{root_element} {' '.join(attributes)}>{children}</{root_element}>"
    )

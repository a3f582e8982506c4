"""
Test doubles for the ADT plugin tests.

FakeObjectAdapter stands in for a whole object kind and records every call.
FakeAdtBackend stands in for the HTTP client and answers like an ADT server.
"""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from ..adapters import ObjectAdapter
from ..adt_rest_utils import CSRF_HEADER, DISCOVERY_PATH, process_adt_response
from ..errors import AdtError
from ..types import (
    ActivationResult,
    AdapterResult,
    CheckResult,
    SessionState,
)

LOCK_HANDLE = "A1B2C3D4E5F6G7H8I9J0K1L2M3N4O5"


def exception_xml(message: str, exception_type: str = "ExceptionResourceError") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<exc:exception xmlns:exc="http://www.sap.com/abapxml/types/communicationframework">'
        '<namespace id="com.sap.adt"/>'
        f'<type id="{exception_type}"/>'
        f'<message lang="EN">{message}</message>'
        f'<localizedMessage lang="EN">{message}</localizedMessage>'
        "</exc:exception>"
    )


def lock_xml(handle: str = LOCK_HANDLE) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<asx:abap xmlns:asx="http://www.sap.com/abapxml" version="1.0">'
        "<asx:values><DATA>"
        f"<LOCK_HANDLE>{handle}</LOCK_HANDLE>"
        "<CORRNR/><CORRUSER/><CORRTEXT/>"
        "</DATA></asx:values></asx:abap>"
    )


def check_report_xml(messages: List[Tuple[str, str, Optional[int]]]) -> str:
    """Build a check run report from (type, text, line) tuples"""
    entries = ""
    for message_type, text, line in messages:
        uri = "/sap/bc/adt/oo/classes/zcl_test/source/main"
        if line is not None:
            uri += f"#start={line},1"
        entries += (
            f'<chkrun:checkMessage chkrun:uri="{uri}" chkrun:type="{message_type}" '
            f'chkrun:shortText="{text}"/>'
        )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<chkrun:checkRunReports xmlns:chkrun="http://www.sap.com/adt/checkrun">'
        '<chkrun:checkReport chkrun:reporter="abapCheckRun" chkrun:status="processed">'
        f"<chkrun:checkMessageList>{entries}</chkrun:checkMessageList>"
        "</chkrun:checkReport>"
        "</chkrun:checkRunReports>"
    )


class FakeObjectAdapter(ObjectAdapter):
    """ObjectAdapter double with call spies and scripted failures.

    Every call returns a new SessionState derived from the one it received, so
    tests can verify that each call got the session produced by the previous one.
    """

    def __init__(self, kind: str = "class"):
        self.kind = kind
        self.calls: List[str] = []
        # (operation, session received, session returned)
        self.history: List[Tuple[str, SessionState, SessionState]] = []
        self.failures: Dict[str, List[BaseException]] = defaultdict(list)
        self.check_results: List[CheckResult] = []
        self.checked: List[Tuple[Optional[str], str]] = []
        self.activation = ActivationResult(activated=True)
        self.delays: Dict[str, float] = {}
        self.updated_content: Optional[str] = None
        self.update_handles: List[str] = []
        self.unlock_handles: List[str] = []
        # names of objects that exist on the simulated backend
        self.existing: Set[str] = set()
        self._counter = 0

    def fail(self, operation: str, error: BaseException, times: int = 1) -> None:
        self.failures[operation].extend([error] * times)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    async def _step(self, operation: str, session: SessionState) -> SessionState:
        self.calls.append(operation)
        delay = self.delays.get(operation)
        if delay:
            await asyncio.sleep(delay)

        self._counter += 1
        returned = session.with_updates(
            cookie_store={"SAP_SESSIONID": f"{operation}-{self._counter}"}
        )
        self.history.append((operation, session, returned))

        if self.failures[operation]:
            error = self.failures[operation].pop(0)
            if isinstance(error, AdtError) and error.session_state is None:
                error.session_state = returned
            raise error
        return returned

    async def validate(self, descriptor, session):
        returned = await self._step("validate", session)
        if descriptor.name in self.existing:
            raise AdtError(
                f"Resource {descriptor.name} does already exist",
                status_code=400,
                exception_type="ExceptionResourceAlreadyExists",
                session_state=returned,
            )
        return AdapterResult(session=returned)

    async def create(self, descriptor, session):
        returned = await self._step("create", session)
        if descriptor.name in self.existing:
            raise AdtError("Conflict", status_code=409, session_state=returned)
        self.existing.add(descriptor.name)
        return AdapterResult(session=returned, status_code=201)

    async def lock(self, descriptor, session):
        return AdapterResult(session=await self._step("lock", session), data=LOCK_HANDLE)

    async def check(self, descriptor, session, content=None, version="inactive"):
        self.checked.append((content, version))
        returned = await self._step("check", session)
        result = self.check_results.pop(0) if self.check_results else CheckResult(passed=True)
        return AdapterResult(session=returned, data=result)

    async def update(self, descriptor, content, lock_handle, session):
        self.update_handles.append(lock_handle)
        returned = await self._step("update", session)
        self.updated_content = content
        return AdapterResult(session=returned)

    async def unlock(self, descriptor, lock_handle, session):
        self.unlock_handles.append(lock_handle)
        return AdapterResult(session=await self._step("unlock", session))

    async def activate(self, descriptor, session):
        return AdapterResult(session=await self._step("activate", session), data=self.activation)

    async def delete(self, descriptor, session):
        returned = await self._step("delete", session)
        if descriptor.name not in self.existing:
            raise AdtError(
                f"Resource {descriptor.name} does not exist",
                status_code=404,
                session_state=returned,
            )
        self.existing.discard(descriptor.name)
        return AdapterResult(session=returned)


class FakeAdtBackend:
    """Drop-in replacement for AdtHttpClient that answers from scripted routes.

    Routes match on method, a path fragment and optionally the ``_action``
    query parameter. Unmatched requests get an empty 200. A CSRF fetch returns
    ``csrf_token`` and a session cookie.
    """

    def __init__(self, csrf_token: str = "CSRF-TOKEN-1"):
        self.csrf_token = csrf_token
        self.requests: List[Dict[str, Any]] = []
        self.routes: List[Dict[str, Any]] = []
        self.entered = 0
        self.exited = 0

    async def __aenter__(self) -> "FakeAdtBackend":
        self.entered += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.exited += 1

    def on(
        self,
        method: str,
        fragment: str,
        status: int = 200,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
        set_cookies: Optional[List[str]] = None,
        action: Optional[str] = None,
        times: Optional[int] = None,
    ) -> "FakeAdtBackend":
        self.routes.append(
            {
                "method": method.upper(),
                "fragment": fragment,
                "action": action,
                "status": status,
                "body": body,
                "headers": headers or {},
                "set_cookies": set_cookies or [],
                "remaining": times,
            }
        )
        return self

    def requests_to(self, fragment: str, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            request
            for request in self.requests
            if fragment in request["path"]
            and (method is None or request["method"] == method.upper())
        ]

    def _match(self, method: str, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for route in self.routes:
            if route["method"] != method or route["fragment"] not in path:
                continue
            if route["action"] is not None and params.get("_action") != route["action"]:
                continue
            if route["remaining"] is not None:
                if route["remaining"] <= 0:
                    continue
                route["remaining"] -= 1
            return route
        return None

    async def request(self, method, url, headers=None, params=None, data=None, **kwargs):
        method = method.upper()
        headers = headers or {}
        params = params or {}
        path = urlparse(url).path
        self.requests.append(
            {
                "method": method,
                "url": url,
                "path": path,
                "headers": dict(headers),
                "params": dict(params),
                "data": data.decode("utf-8") if isinstance(data, bytes) else data,
            }
        )

        route = self._match(method, path, params)
        if route is None and path == DISCOVERY_PATH and headers.get(CSRF_HEADER) == "fetch":
            route = {
                "status": 200,
                "body": "",
                "headers": {CSRF_HEADER: self.csrf_token},
                "set_cookies": ["SAP_SESSIONID_DEV_100=abc123; path=/; HttpOnly"],
            }
        if route is None:
            route = {"status": 200, "body": "", "headers": {}, "set_cookies": []}

        result = process_adt_response(route["body"], route["status"])
        result["status_code"] = route["status"]
        result["raw_response"] = route["body"]
        result["headers"] = {k.lower(): v for k, v in route["headers"].items()}
        result["set_cookies"] = list(route["set_cookies"])
        return result

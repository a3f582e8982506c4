"""Connection lifecycle and session threading.

``ConnectionProvider`` owns one HTTP client for the duration of an ``async with``
block and hands out an ``AdtConnection``. ``SessionContext`` holds the latest
``SessionState`` of one logical conversation and is advanced after every call.
"""

import logging
from typing import Dict, Any, Optional, Tuple, Union, Callable

import aiohttp

from config import env_manager
from config.types import AdtConnectionConfig
from .adt_rest_utils import (
    AdtHttpClient,
    CSRF_HEADER,
    DISCOVERY_PATH,
    apply_response_to_session,
    build_session_headers,
    csrf_token_required,
    new_session_id,
)
from .errors import AdtError
from .types import ErrorKind, SessionState

logger = logging.getLogger(__name__)


class AdtConnection:
    """Authenticated access to one ADT backend through a shared HTTP client"""

    def __init__(self, config: AdtConnectionConfig, http_client: AdtHttpClient):
        self.config = config
        self.http_client = http_client

    def _authorization(self) -> str:
        if self.config.bearer_token:
            return f"Bearer {self.config.bearer_token}"
        if self.config.user and self.config.password:
            return aiohttp.BasicAuth(self.config.user, self.config.password).encode()
        raise AdtError(
            "ADT credentials not configured. Set ADT_USER and ADT_PASSWORD or ADT_BEARER_TOKEN.",
            kind=ErrorKind.CONNECTION_FAILED,
        )

    async def _send(
        self,
        method: str,
        path: str,
        session: SessionState,
        params: Optional[Dict[str, Any]],
        data: Optional[str],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        request_headers = build_session_headers(
            session,
            client=self.config.client,
            language=self.config.language,
            authorization=self._authorization(),
        )
        request_headers.update(headers)
        return await self.http_client.request(
            method,
            f"{self.config.base_url}{path}",
            headers=request_headers,
            params=params,
            data=data.encode("utf-8") if isinstance(data, str) else data,
        )

    async def call(
        self,
        method: str,
        path: str,
        session: SessionState,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[str] = None,
        content_type: Optional[str] = None,
        accept: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], SessionState]:
        """Send one request within a session.

        Returns:
            The standardized result dict and the session as updated by the response

        Raises:
            AdtError: If the request failed; ``session_state`` carries the latest session
        """
        headers: Dict[str, str] = {}
        if accept:
            headers["Accept"] = accept
        if content_type:
            headers["Content-Type"] = content_type

        result = await self._send(method, path, session, params, data, headers)
        session = apply_response_to_session(session, result)

        if csrf_token_required(result):
            logger.debug(f"CSRF token rejected for {method} {path}, fetching a new one")
            session = await self.fetch_csrf_token(session)
            result = await self._send(method, path, session, params, data, headers)
            session = apply_response_to_session(session, result)

        if not result.get("success"):
            raise AdtError.from_response(result, session_state=session)
        return result, session

    async def fetch_csrf_token(self, session: SessionState) -> SessionState:
        """Ask the backend for a CSRF token bound to this session"""
        result = await self._send(
            "GET",
            DISCOVERY_PATH,
            session,
            None,
            None,
            {CSRF_HEADER: "fetch", "Accept": "application/atomsvc+xml"},
        )
        updated = apply_response_to_session(session, result)
        if not result.get("success"):
            raise AdtError.from_response(
                result, session_state=updated, context="Failed to fetch CSRF token"
            )
        if not updated.csrf_token:
            raise AdtError(
                "Backend did not return a CSRF token",
                status_code=result.get("status_code"),
                kind=ErrorKind.CONNECTION_FAILED,
                session_state=updated,
            )
        return updated


class ConnectionProvider:
    """Creates and tears down the HTTP client behind an AdtConnection.

    Example:
        async with ConnectionProvider.from_env() as connection:
            ...
    """

    def __init__(
        self,
        config: AdtConnectionConfig,
        http_client_factory: Optional[Callable[[AdtConnectionConfig], AdtHttpClient]] = None,
    ):
        self.config = config
        self._http_client_factory = http_client_factory or self._default_client
        self._http_client: Optional[AdtHttpClient] = None

    @staticmethod
    def _default_client(config: AdtConnectionConfig) -> AdtHttpClient:
        return AdtHttpClient(
            request_timeout=config.request_timeout,
            max_retries=config.max_retries,
            verify_ssl=config.verify_ssl,
        )

    @classmethod
    def from_env(cls) -> "ConnectionProvider":
        """Build a provider from the configured ADT parameters

        Raises:
            ValueError: If no ADT URL is configured
        """
        return cls(env_manager.get_adt_connection_config())

    async def __aenter__(self) -> AdtConnection:
        self._http_client = self._http_client_factory(self.config)
        await self._http_client.__aenter__()
        logger.debug(f"Opened ADT connection to {self.config.base_url}")
        return AdtConnection(self.config, self._http_client)

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._http_client is not None:
            await self._http_client.__aexit__(exc_type, exc_val, exc_tb)
            self._http_client = None
            logger.debug(f"Closed ADT connection to {self.config.base_url}")


class SessionContext:
    """Latest session state of one logical conversation with the backend"""

    def __init__(self, connection: Optional[AdtConnection] = None):
        self._connection = connection
        self._state: Optional[SessionState] = None

    @property
    def current(self) -> Optional[SessionState]:
        return self._state

    @property
    def started(self) -> bool:
        return self._state is not None

    async def bootstrap(self) -> SessionState:
        """Start a fresh session and fetch its CSRF token"""
        state = SessionState(session_id=new_session_id())
        if self._connection is not None:
            state = await self._connection.fetch_csrf_token(state)
        self._state = state
        logger.debug(f"Started ADT session {state.session_id}")
        return state

    def restore(
        self,
        prior_state: Union[SessionState, Dict[str, Any], None],
        session_id: Optional[str] = None,
    ) -> SessionState:
        """Resume a session from the state a previous invocation returned"""
        if isinstance(prior_state, SessionState):
            state = prior_state
        else:
            state = SessionState.from_payload(
                session_id or new_session_id(), prior_state or {}
            )
        if session_id and state.session_id != session_id:
            state = state.model_copy(update={"session_id": session_id})
        self._state = state
        logger.debug(f"Restored ADT session {state.session_id}")
        return state

    async def open(
        self,
        prior_state: Union[SessionState, Dict[str, Any], None] = None,
        session_id: Optional[str] = None,
    ) -> SessionState:
        """Restore when the caller supplied a session, otherwise bootstrap"""
        if prior_state or session_id:
            return self.restore(prior_state, session_id)
        return await self.bootstrap()

    def advance(self, state: Optional[SessionState]) -> None:
        """Adopt the session returned by the latest remote call"""
        if state is not None:
            self._state = state

from typing import Dict, Any, Optional
from pydantic import BaseModel


class RepositoryInfo(BaseModel):
    """Model representing the local workspace the server runs in"""

    git_root: Optional[str] = None


class AdtConnectionConfig(BaseModel):
    """Connection settings for one ADT backend"""

    url: str
    user: Optional[str] = None
    password: Optional[str] = None
    bearer_token: Optional[str] = None
    client: Optional[str] = None
    language: str = "EN"
    verify_ssl: bool = True
    request_timeout: int = 60
    max_retries: int = 2

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")

    def has_credentials(self) -> bool:
        """Whether basic auth or a bearer token is configured"""
        return bool(self.bearer_token) or bool(self.user and self.password)

    @classmethod
    def from_parameters(
        cls, params: Dict[str, Any], settings: Optional[Dict[str, Any]] = None
    ) -> "AdtConnectionConfig":
        """Build a config from ``adt_parameters`` plus the typed settings"""
        settings = settings or {}
        url = params.get("url")
        if not url:
            raise ValueError(
                "ADT URL not configured. Please set the ADT_URL environment variable."
            )
        verify_ssl = params.get("verify_ssl", True)
        if isinstance(verify_ssl, str):
            verify_ssl = verify_ssl.lower() in ("true", "1", "yes", "on")
        return cls(
            url=url,
            user=params.get("user"),
            password=params.get("password"),
            bearer_token=params.get("bearer_token"),
            client=params.get("client") or None,
            language=params.get("language") or "EN",
            verify_ssl=verify_ssl,
            request_timeout=int(settings.get("adt_request_timeout", 60)),
            max_retries=int(settings.get("adt_max_retries", 2)),
        )

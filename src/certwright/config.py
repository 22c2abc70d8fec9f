"""Client configuration.

Settings load from ``CERTWRIGHT_*`` environment variables (and an optional
``.env`` file) via pydantic-settings, and can equally be built in code:

    settings = ClientSettings(directory_url="https://acme.example/dir", poll_timeout=300)
"""

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"


@dataclass(frozen=True)
class PollPolicy:
    """Backoff discipline for waiting on order and authorization status.

    The delay starts at ``interval`` and is multiplied by ``backoff`` after
    every attempt, never exceeding ``max_interval``. A backoff of 1 gives a
    fixed interval. ``timeout`` is the total wait budget per resource.
    """

    interval: float = 1.0
    max_interval: float = 10.0
    backoff: float = 1.5
    timeout: float = 120.0

    def delays(self):
        """Yield successive sleep intervals (unbounded)."""
        delay = self.interval
        while True:
            yield delay
            delay = min(delay * self.backoff, self.max_interval)


class ClientSettings(BaseSettings):
    """Tunables for :class:`certwright.client.AcmeClient`."""

    directory_url: str = Field(
        default=LETSENCRYPT_STAGING, description="ACME directory endpoint URL"
    )
    verify: bool | str = Field(
        default=True, description="TLS verification: True, False, or a CA bundle path"
    )
    http_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    user_agent: str = Field(default="certwright/0.1.0", description="User-Agent header value")

    poll_interval: float = Field(default=1.0, ge=0)
    poll_max_interval: float = Field(default=10.0, ge=0)
    poll_backoff: float = Field(default=1.5, ge=1)
    poll_timeout: float = Field(default=120.0, gt=0, description="Wait budget per resource")

    max_workers: int | None = Field(
        default=None, ge=1, description="Ceiling on concurrent identifier tasks"
    )
    bad_nonce_retries: int = Field(default=3, ge=0)
    min_rsa_key_size: int = Field(default=2048, ge=1024)

    model_config = SettingsConfigDict(
        env_prefix="CERTWRIGHT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_intervals(self) -> "ClientSettings":
        if self.poll_max_interval < self.poll_interval:
            raise ValueError("poll_max_interval must be >= poll_interval")
        return self

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.poll_interval,
            max_interval=self.poll_max_interval,
            backoff=self.poll_backoff,
            timeout=self.poll_timeout,
        )

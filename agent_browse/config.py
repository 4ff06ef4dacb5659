"""Install-root paths, environment settings and API credentials."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_AZURE_DEPLOYMENT = "gpt-41-mini"


class EnvironmentFailure(RuntimeError):
    """The local environment cannot run any command (missing browser, missing credential)."""


class MissingCredentialError(EnvironmentFailure):
    """No API credential for the automation engine was found."""


@dataclass
class Settings:
    """Runtime settings, resolved once per CLI invocation."""

    root: Path
    chrome_path: str | None = None
    source_profile: Path | None = None
    extra_blocked_domains: list[str] = field(default_factory=list)
    model: str | None = None
    log_level: str = "WARNING"

    viewport_width: int = 1920
    viewport_height: int = 1080
    launch_attempts: int = 60
    launch_interval: float = 0.5
    ready_state_attempts: int = 30
    ready_state_interval: float = 0.1
    navigation_timeout: float = 30.0
    navigation_fallback_timeout: float = 15.0
    settle_delay: float = 3.0
    probe_timeout: float = 2.0
    reprobe_timeout: float = 1.0
    graceful_exit_wait: float = 2.0
    terminate_grace: float = 1.0

    @property
    def port_file(self) -> Path:
        return self.root / ".cdp-port"

    @property
    def pid_file(self) -> Path:
        return self.root / ".chrome-pid"

    @property
    def profile_dir(self) -> Path:
        return self.root / ".chrome-profile"

    @property
    def downloads_dir(self) -> Path:
        return self.root / "agent" / "downloads"

    @property
    def screenshots_dir(self) -> Path:
        return self.root / "agent" / "browser_screenshots"

    @classmethod
    def from_env(cls, root: str | Path | None = None) -> "Settings":
        """Build settings from the environment, loading ``<root>/.env`` first.

        Args:
            root: Install root. Defaults to AGENT_BROWSE_ROOT, then the working directory.

        Returns:
            Resolved settings
        """
        if root is None:
            root = os.getenv("AGENT_BROWSE_ROOT") or Path.cwd()
        root_path = Path(root).expanduser().resolve()

        # Shell variables take precedence over the .env file
        load_dotenv(root_path / ".env", override=False)

        source_profile = os.getenv("CHROME_SOURCE_PROFILE")
        extra = os.getenv("AGENT_BROWSE_BLOCKED_DOMAINS", "")

        return cls(
            root=root_path,
            chrome_path=os.getenv("CHROME_PATH") or None,
            source_profile=Path(source_profile).expanduser() if source_profile else None,
            extra_blocked_domains=[d.strip() for d in extra.split(",") if d.strip()],
            model=os.getenv("AGENT_BROWSE_MODEL") or None,
            log_level=os.getenv("AGENT_BROWSE_LOG_LEVEL", "WARNING").upper(),
        )


@dataclass(frozen=True)
class Credential:
    """API credential for the automation engine's LLM."""

    provider: str
    api_key: str
    model: str
    endpoint: str | None = None
    api_version: str | None = None


def load_credential(settings: Settings) -> Credential:
    """Resolve the LLM credential from the environment.

    ANTHROPIC_API_KEY wins; otherwise a complete Azure OpenAI configuration is used.

    Raises:
        MissingCredentialError: If neither provider is configured
    """
    anthropic_key = os.getenv("ANTHROPIC_API_KEY")
    if anthropic_key:
        return Credential(
            provider="anthropic",
            api_key=anthropic_key,
            model=settings.model or DEFAULT_ANTHROPIC_MODEL,
        )

    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    azure_key = os.getenv("AZURE_OPENAI_API_KEY")
    if endpoint and azure_key:
        return Credential(
            provider="azure",
            api_key=azure_key,
            model=settings.model or os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME", DEFAULT_AZURE_DEPLOYMENT),
            endpoint=endpoint,
            api_version=os.getenv("AZURE_OPENAI_API_VERSION") or None,
        )

    raise MissingCredentialError(
        "No API key found for the automation engine.\n"
        'Export one in your shell: export ANTHROPIC_API_KEY="your-api-key"\n'
        f'Or add it to {settings.root / ".env"}: ANTHROPIC_API_KEY="your-api-key"\n\n'
        "Azure OpenAI is also supported via AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY."
    )

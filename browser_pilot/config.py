"""
Configuration for browser_pilot.

Two layers:

- ``CONFIG``: a lazy view over process environment variables, used only by the
  logging bootstrap (mirrors the ``CONFIG.<NAME>`` access pattern used in
  ``logging_config``).
- ``Settings``: an explicit, frozen configuration object built once at process
  start (``Settings.from_env()``) and passed down to the service, orchestrator,
  engine and backend. Core modules never read the environment themselves.
"""
from __future__ import annotations

import os
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from browser_pilot.exceptions import ConfigurationError

COORDINATE_RANGE = 1000

DEFAULT_INTERNAL_URL_PATTERNS = ('/topbar/', '/sidebar/', 'topbar.html', 'sidebar.html')


class _EnvConfig:
    """Lazily evaluated env lookups so values reflect the environment at access time."""

    @property
    def BROWSER_PILOT_LOGGING_LEVEL(self) -> str:
        return os.getenv('BROWSER_PILOT_LOGGING_LEVEL', 'info').lower()

    @property
    def BROWSER_PILOT_SETUP_LOGGING(self) -> bool:
        return os.getenv('BROWSER_PILOT_SETUP_LOGGING', 'true').lower() != 'false'


CONFIG = _EnvConfig()


class AgentConfig(BaseModel):
    """Task budget. Immutable for the life of a task context."""

    model_config = ConfigDict(frozen=True)

    max_turns: int = Field(30, ge=1, description='Upper bound on steps handed to the reasoning backend.')
    max_retries: int = Field(3, ge=0, description='Failed-action budget used by retry-eligibility checks.')
    timeout_seconds: float = Field(300.0, gt=0, description='Wall-clock budget for the whole task.')
    default_url: str = Field('https://www.google.com/', description='Target used when the active tab is blank.')
    settle_timeout_ms: int = Field(2000, ge=0, description='Bound for the network-idle wait after an action.')
    settle_fallback_seconds: float = Field(0.3, ge=0, description='Fixed delay used when network idle is not reached.')
    resolve_attempts: int = Field(10, ge=1)
    resolve_delay_seconds: float = Field(0.5, ge=0)


class EngineConfig(BaseModel):
    """Automation engine connection settings."""

    model_config = ConfigDict(frozen=True)

    cdp_url: str = 'http://127.0.0.1:9222'
    internal_url_patterns: tuple[str, ...] = DEFAULT_INTERNAL_URL_PATTERNS
    coordinate_range: int = Field(COORDINATE_RANGE, gt=0)
    viewport_width: int = Field(1440, gt=0)
    viewport_height: int = Field(900, gt=0)
    max_observed_candidates: int = Field(8, ge=1)
    search_engine: Literal['google', 'bing', 'duckduckgo'] = 'google'

    @field_validator('cdp_url')
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip('/')


class BackendConfig(BaseModel):
    """Reasoning backend settings."""

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = Field(None, repr=False)
    model: str = 'gemini-2.5-computer-use-preview-10-2025'
    request_timeout_seconds: float = Field(60.0, gt=0)
    system_prompt: Optional[str] = None


class Settings(BaseModel):
    """Aggregate, immutable configuration constructed once at startup."""

    model_config = ConfigDict(frozen=True)

    agent: AgentConfig = Field(default_factory=AgentConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Build settings from environment variables (``.env`` is loaded by logging setup)."""
        env = os.environ if environ is None else environ

        agent: dict = {}
        engine: dict = {}
        backend: dict = {}

        if env.get('BROWSER_PILOT_MAX_TURNS'):
            agent['max_turns'] = env['BROWSER_PILOT_MAX_TURNS']
        if env.get('BROWSER_PILOT_MAX_RETRIES'):
            agent['max_retries'] = env['BROWSER_PILOT_MAX_RETRIES']
        if env.get('BROWSER_PILOT_TIMEOUT_SECONDS'):
            agent['timeout_seconds'] = env['BROWSER_PILOT_TIMEOUT_SECONDS']

        cdp_url = env.get('BROWSER_PILOT_CDP_URL') or env.get('ELECTRON_REMOTE_DEBUGGING_URL')
        if cdp_url:
            engine['cdp_url'] = cdp_url
        if env.get('BROWSER_PILOT_INTERNAL_URL_PATTERNS'):
            patterns = [p.strip() for p in env['BROWSER_PILOT_INTERNAL_URL_PATTERNS'].split(',') if p.strip()]
            engine['internal_url_patterns'] = tuple(patterns)
        if env.get('BROWSER_PILOT_SEARCH_ENGINE'):
            engine['search_engine'] = env['BROWSER_PILOT_SEARCH_ENGINE'].lower()

        if env.get('GOOGLE_API_KEY'):
            backend['api_key'] = env['GOOGLE_API_KEY']
        if env.get('BROWSER_PILOT_MODEL'):
            backend['model'] = env['BROWSER_PILOT_MODEL']

        try:
            return cls(
                agent=AgentConfig(**agent),
                engine=EngineConfig(**engine),
                backend=BackendConfig(**backend),
            )
        except ValidationError as e:
            raise ConfigurationError(f'Invalid configuration: {e}') from e

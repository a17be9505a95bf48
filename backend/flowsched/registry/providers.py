"""Provider table - the closed set of external APIs the scheduler can call."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from flowsched.errors import UnknownProviderError


class Provider(str, Enum):
    RUNNINGHUB = "runninghub"
    KIE = "kie"
    JSONCUT = "jsoncut"
    POSTFORME = "postforme"

    @classmethod
    def from_source(cls, source: str) -> "Provider":
        """Resolve a provider name or one of its callback aliases."""
        key = (source or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            pass
        for provider, spec in DEFAULT_PROVIDERS.items():
            if key in spec.aliases:
                return provider
        raise UnknownProviderError(source)


@dataclass(frozen=True)
class ProviderSpec:
    provider: Provider
    base_url: str
    # Callback ``source`` values that also resolve to this provider.
    aliases: tuple[str, ...] = ()
    # Status-query endpoint; providers without one are push-only.
    status_url: str | None = None
    # The accept response already carries the final result (no callback).
    completes_on_accept: bool = False
    # A JSON body ``code`` other than 0 signals failure despite HTTP 200.
    code_field_signals_error: bool = False

    @property
    def supports_polling(self) -> bool:
        return self.status_url is not None


DEFAULT_PROVIDERS: dict[Provider, ProviderSpec] = {
    Provider.RUNNINGHUB: ProviderSpec(
        provider=Provider.RUNNINGHUB,
        base_url="https://api.runninghub.ai",
        aliases=("rhub",),
        status_url="https://www.runninghub.ai/openapi/v2/query",
        code_field_signals_error=True,
    ),
    Provider.KIE: ProviderSpec(
        provider=Provider.KIE,
        base_url="https://api.kie.ai",
        aliases=("kapi",),
    ),
    Provider.JSONCUT: ProviderSpec(
        provider=Provider.JSONCUT,
        base_url="https://api.jsoncut.com",
        aliases=("jcut",),
    ),
    Provider.POSTFORME: ProviderSpec(
        provider=Provider.POSTFORME,
        base_url="https://api.postforme.dev",
        aliases=("sapi",),
        completes_on_accept=True,
    ),
}

"""Provider selection for each kind of completion call.

The router only decides *which* OpenAI-compatible endpoint serves a call
(persona turn, concept extraction, summary, illustration); building the chat
client is left to the completion service so the policy stays testable with a
plain dict as environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    key_var: Optional[str]
    url_var: str
    model_var: str
    model: str
    url: str
    keyless: bool = False


PROVIDERS: Dict[str, ProviderSpec] = {
    spec.name: spec
    for spec in (
        ProviderSpec("openai", "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL", "gpt-4o-mini", "https://api.openai.com/v1"),
        ProviderSpec(
            "gemini",
            "GEMINI_API_KEY",
            "GEMINI_BASE_URL",
            "GEMINI_MODEL",
            "gemini-2.5-flash",
            "https://generativelanguage.googleapis.com/v1beta/openai",
        ),
        ProviderSpec("xai", "XAI_API_KEY", "XAI_BASE_URL", "XAI_MODEL", "grok-2-latest", "https://api.x.ai/v1"),
        ProviderSpec(
            "local", "LOCAL_API_KEY", "LOCAL_BASE_URL", "LOCAL_MODEL", "llama3.1", "http://127.0.0.1:11434/v1", keyless=True
        ),
    )
}

# Purpose -> providers in order of preference.
ROUTING_POLICY: Dict[str, List[str]] = {
    "persona": ["gemini", "openai", "xai", "local"],
    "extraction": ["openai", "gemini", "xai", "local"],
    "summary": ["openai", "gemini", "xai", "local"],
    # Only the OpenAI images endpoint is wired up.
    "image": ["openai"],
}


@dataclass(frozen=True)
class ProviderSelection:
    """The provider picked for a call, without any secret material."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = os.environ if env is None else env
        self._allowed = frozenset(allowed_providers) if allowed_providers else None
        wanted = (self._env.get("BRAINSTORM_MODEL_PROVIDER") or "").strip().lower()
        self._preferred = wanted if wanted in PROVIDERS else None

    def _usable(self, spec: ProviderSpec) -> bool:
        if self._allowed is not None and spec.name not in self._allowed:
            return False
        if not spec.keyless:
            return bool(spec.key_var and self._env.get(spec.key_var))
        # A keyless local server has to be switched on explicitly.
        if (self._env.get("BRAINSTORM_ENABLE_LOCAL_PROVIDER") or "").strip() != "1":
            return False
        return bool(self._env.get(spec.url_var)) or self._preferred == spec.name

    def _candidates(self, purpose: str) -> List[str]:
        order = list(ROUTING_POLICY.get(purpose) or ROUTING_POLICY["persona"])
        if self._preferred in order:
            order.remove(self._preferred)
            order.insert(0, self._preferred)
        return order

    def resolve_provider(self, provider: str) -> ProviderSelection:
        spec = PROVIDERS[provider]
        return ProviderSelection(
            name=spec.name,
            model=self._env.get(spec.model_var) or spec.model,
            api_key_env=spec.key_var,
            base_url_env=spec.url_var,
            default_base_url=spec.url,
            requires_api_key=not spec.keyless,
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """First usable provider for ``purpose``.

        An explicit ``BRAINSTORM_MODEL_PROVIDER`` jumps the queue when the
        purpose allows it. Raises ``RuntimeError`` when nothing is configured.
        """
        for name in self._candidates(purpose):
            if self._usable(PROVIDERS[name]):
                return self.resolve_provider(name)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None

    def base_url(self, selection: ProviderSelection) -> Optional[str]:
        override = self._env.get(selection.base_url_env) if selection.base_url_env else None
        return override or selection.default_base_url

    def api_key(self, selection: ProviderSelection) -> Optional[str]:
        return self._env.get(selection.api_key_env) if selection.api_key_env else None

    def generate_metadata(self, purpose: str) -> Dict[str, Optional[str]]:
        """Describe the chosen provider for logs and health output; never includes keys."""
        chosen = self.select_provider(purpose)
        return {
            "provider": chosen.name,
            "model": chosen.model,
            "api_key_env": chosen.api_key_env,
            "base_url_env": chosen.base_url_env,
        }

    def describe(self) -> Dict[str, Optional[Dict[str, Optional[str]]]]:
        """Metadata per purpose; ``None`` where no provider is configured."""
        return {
            purpose: self.generate_metadata(purpose) if self.maybe_select_provider(purpose) else None
            for purpose in ROUTING_POLICY
        }

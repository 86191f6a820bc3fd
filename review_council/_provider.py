# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Reviewer provider contract, model tiers and the provider registry."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping

from ._exceptions import UnknownProviderError
from ._processes import ProcessTracker

logger = logging.getLogger("review_council")

CANONICAL_TIERS = ("fast", "balanced", "thorough")

TIER_ALIASES = {
    "free": "fast",
    "premium": "thorough",
}

VALID_TIERS = (*CANONICAL_TIERS, *TIER_ALIASES)

MODEL_TIERS = {
    "fast": {"name": "Fast", "tagline": "Lightning Fast", "badge": "Fastest"},
    "balanced": {"name": "Balanced", "tagline": "Best Balance", "badge": "Recommended"},
    "thorough": {"name": "Thorough", "tagline": "Most Capable", "badge": "Most Thorough"},
}

# Default timeout for availability checks (10 seconds)
DEFAULT_AVAILABILITY_TIMEOUT = 10.0


def normalize_tier(tier: str) -> str:
    """Map a tier alias to its canonical tier."""
    return TIER_ALIASES.get(tier, tier)


def prettify_model_id(model_id: str) -> str:
    """Turn 'anthropic/claude-sonnet-4' into 'Anthropic Claude Sonnet 4'."""
    words = model_id.replace("/", " ").replace("-", " ").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


@dataclass(frozen=True)
class ModelInfo:
    """A model a provider can run, mapped onto a provider-agnostic tier.

    Attributes:
        id: Model identifier passed to the provider CLI.
        tier: 'fast', 'balanced' or 'thorough'.
        name: Display name.
        description: Short description.
        default: Marks the provider's default model.
        extra_args: CLI arguments used only with this model.
        env: Environment variables used only with this model.
    """

    id: str
    tier: str
    name: str = ""
    description: str = ""
    default: bool = False
    extra_args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def badge(self) -> str:
        return MODEL_TIERS[self.tier]["badge"]


def infer_model_defaults(model: Mapping[str, Any]) -> ModelInfo:
    """Build a ModelInfo from a config entry, filling in optional fields.

    Raises:
        ValueError: If the tier is missing or not a known tier or alias.
    """
    model_id = model.get("id")
    if not model_id:
        raise ValueError("Model definition is missing required \"id\" field")

    tier = model.get("tier")
    if not tier:
        raise ValueError(
            f"Model \"{model_id}\" is missing required \"tier\" field. "
            f"Valid tiers: {', '.join(VALID_TIERS)}"
        )
    if tier not in VALID_TIERS:
        raise ValueError(
            f"Model \"{model_id}\" has invalid tier \"{tier}\". "
            f"Valid tiers: {', '.join(VALID_TIERS)}"
        )

    return ModelInfo(
        id=model_id,
        tier=normalize_tier(tier),
        name=model.get("name") or prettify_model_id(model_id),
        description=model.get("description", ""),
        default=bool(model.get("default", False)),
        extra_args=tuple(model.get("extra_args") or ()),
        env=dict(model.get("env") or {}),
    )


def resolve_default_model(models: list[ModelInfo] | None) -> str | None:
    """Pick the default model: explicit default, then first balanced, then first."""
    if not models:
        return None
    for model in models:
        if model.default:
            return model.id
    for model in models:
        if model.tier == "balanced":
            return model.id
    return models[0].id


@dataclass
class ProviderOverrides:
    """Per-provider configuration loaded from the user's config file."""

    command: str | None = None
    install_instructions: str | None = None
    extra_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    models: list[ModelInfo] | None = None

    def model(self, model_id: str | None) -> ModelInfo | None:
        for model in self.models or []:
            if model.id == model_id:
                return model
        return None


@dataclass
class ExecuteOptions:
    """Options for a single provider execution.

    Attributes:
        cwd: Working directory the reviewer runs in (usually the worktree).
        timeout: Seconds before the process is killed. None uses the provider default.
        level: Analysis level, used for log prefixes.
        analysis_id: Run id the spawned processes are tracked under.
        tracker: Process tracker used for run-level cancellation.
        is_cancelled: Returns True once the run has been cancelled.
        on_stream_event: Receives StreamEvents while the provider runs.
    """

    cwd: str | None = None
    timeout: float | None = None
    level: str | int | None = None
    analysis_id: str | None = None
    tracker: ProcessTracker | None = None
    is_cancelled: Callable[[], bool] | None = None
    on_stream_event: Callable[[Any], None] | None = None

    def cancelled(self) -> bool:
        return bool(self.is_cancelled and self.is_cancelled())


@dataclass
class ProviderResult:
    """Outcome of a provider execution.

    A successful parse carries ``data``. When the reviewer answered in prose,
    ``raw`` holds its text and ``parsed`` is False; that is a degraded result,
    not an error.
    """

    data: Any = None
    raw: str | None = None
    parsed: bool = True

    @classmethod
    def degraded(cls, raw: str) -> "ProviderResult":
        return cls(data=None, raw=raw, parsed=False)


@dataclass
class AvailabilityResult:
    """Result of probing whether a provider's CLI works."""

    available: bool
    error: str | None = None
    install_instructions: str | None = None


class ReviewProvider(ABC):
    """Interface implemented by every reviewer backend.

    Subclasses set the class attributes below and implement ``execute`` and
    ``test_availability``. Instances are created through a ProviderRegistry.
    """

    PROVIDER_ID: str = ""
    PROVIDER_NAME: str = ""
    MODELS: tuple[ModelInfo, ...] = ()
    DEFAULT_MODEL: str | None = None
    INSTALL_INSTRUCTIONS: str = "Check the provider documentation."

    def __init__(self, model: str | None = None, overrides: ProviderOverrides | None = None) -> None:
        self.overrides = overrides or ProviderOverrides()
        self.model = model or self.default_model()

    @classmethod
    def provider_id(cls) -> str:
        return cls.PROVIDER_ID

    @classmethod
    def provider_name(cls) -> str:
        return cls.PROVIDER_NAME

    @classmethod
    def models(cls) -> list[ModelInfo]:
        return list(cls.MODELS)

    @classmethod
    def default_model(cls) -> str | None:
        return cls.DEFAULT_MODEL or resolve_default_model(cls.models())

    @classmethod
    def install_instructions(cls) -> str:
        return cls.INSTALL_INSTRUCTIONS

    @abstractmethod
    async def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ProviderResult:
        """Run the prompt and return the parsed (or degraded) response."""

    @abstractmethod
    async def test_availability(self) -> bool:
        """Check whether the backend can be invoked."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


ProviderFactory = Callable[..., ReviewProvider]


class ProviderRegistry:
    """Provider classes keyed by provider id, plus their config overrides.

    Example:
        registry = ProviderRegistry()
        registry.register(ClaudeProvider)
        provider = registry.create("claude", "opus")
    """

    def __init__(self) -> None:
        self._providers: dict[str, type[ReviewProvider]] = {}
        self._overrides: dict[str, ProviderOverrides] = {}

    def register(self, provider_class: type[ReviewProvider], provider_id: str | None = None) -> None:
        provider_id = provider_id or provider_class.provider_id()
        if not provider_id:
            raise ValueError(f"{provider_class.__name__} has no provider id")
        self._providers[provider_id] = provider_class
        logger.debug(f"Registered AI provider: {provider_id}")

    def get(self, provider_id: str) -> type[ReviewProvider] | None:
        return self._providers.get(provider_id)

    def ids(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def overrides(self, provider_id: str) -> ProviderOverrides | None:
        return self._overrides.get(provider_id)

    def apply_overrides(self, config: Mapping[str, Any]) -> None:
        """Replace the per-provider overrides from a ``{"providers": {...}}`` config.

        Raises:
            ValueError: If a configured model has a missing or invalid tier.
        """
        self._overrides.clear()
        providers_config = config.get("providers") or {}

        for provider_id, provider_config in providers_config.items():
            models = None
            if provider_config.get("models"):
                models = [infer_model_defaults(model) for model in provider_config["models"]]
                logger.debug(f"Configured {len(models)} models for {provider_id}")

            self._overrides[provider_id] = ProviderOverrides(
                command=provider_config.get("command"),
                install_instructions=provider_config.get("installInstructions")
                or provider_config.get("install_instructions"),
                extra_args=list(provider_config.get("extra_args") or []),
                env=dict(provider_config.get("env") or {}),
                models=models,
            )

        logger.debug(f"Applied config overrides for {len(providers_config)} providers")

    def models_for(self, provider_id: str) -> list[ModelInfo]:
        overrides = self._overrides.get(provider_id)
        if overrides and overrides.models:
            return list(overrides.models)
        provider_class = self._providers.get(provider_id)
        return provider_class.models() if provider_class else []

    def tier_for_model(self, provider_id: str, model_id: str) -> str | None:
        for model in self.models_for(provider_id):
            if model.id == model_id:
                return model.tier
        return None

    def providers_info(self) -> list[dict[str, Any]]:
        """Describe every registered provider, with overrides applied."""
        info = []
        for provider_id, provider_class in self._providers.items():
            overrides = self._overrides.get(provider_id)
            models = self.models_for(provider_id)
            info.append({
                "id": provider_id,
                "name": provider_class.provider_name(),
                "models": models,
                "default_model": resolve_default_model(models) or provider_class.default_model(),
                "install_instructions": (overrides and overrides.install_instructions)
                or provider_class.install_instructions(),
            })
        return info

    def create(self, provider_id: str, model: str | None = None) -> ReviewProvider:
        """Instantiate a provider.

        Args:
            provider_id: Registered provider id.
            model: Model to use. None resolves the configured or built-in default.

        Raises:
            UnknownProviderError: If the provider id is not registered.
        """
        provider_class = self._providers.get(provider_id)
        if provider_class is None:
            raise UnknownProviderError(provider_id, self.ids())

        overrides = self._overrides.get(provider_id)
        actual_model = model
        if not actual_model and overrides and overrides.models:
            actual_model = resolve_default_model(overrides.models)
        if not actual_model:
            actual_model = provider_class.default_model()

        return provider_class(actual_model, replace(overrides) if overrides else None)

    async def test_availability(
        self,
        provider_id: str,
        timeout: float = DEFAULT_AVAILABILITY_TIMEOUT,
    ) -> AvailabilityResult:
        """Check a provider, never raising.

        Returns:
            AvailabilityResult with the error and install hint when unavailable.
        """
        try:
            provider = self.create(provider_id)
            available = await asyncio.wait_for(provider.test_availability(), timeout=timeout)
            return AvailabilityResult(available=available)
        except asyncio.TimeoutError:
            error = "Provider test timed out"
        except Exception as e:
            error = str(e)

        logger.warning(f"Provider {provider_id} is not available: {error}")
        provider_class = self._providers.get(provider_id)
        overrides = self._overrides.get(provider_id)
        install = (overrides and overrides.install_instructions) or (
            provider_class.install_instructions() if provider_class else "Check the provider documentation."
        )
        return AvailabilityResult(available=False, error=error, install_instructions=install)

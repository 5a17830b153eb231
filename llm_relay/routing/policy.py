"""Provider selection: turns a request into an ordered candidate list."""

import logging
from typing import Callable, Iterable, List, Optional, Sequence

from llm_relay.providers.registry import ProviderRegistry
from llm_relay.routing.classifier import PromptClassifier
from llm_relay.routing.models import PromptAnalysis, RoutingRequest

logger = logging.getLogger(__name__)


class SelectionPolicy:
    """
    Ranks providers for a request.

    With ``force_llm`` the forced provider is tried first and only the
    scope's fallback list may follow it. Otherwise candidates come from the
    scope's preferred list, the prompt analysis, the scope's fallback list and
    finally the configured default chain. Unknown, disabled, excluded and
    unavailable providers are dropped.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        classifier: Optional[PromptClassifier] = None,
        default_chain: Sequence[str] = (),
        is_available: Optional[Callable[[str], bool]] = None,
    ):
        self.registry = registry
        self.classifier = classifier
        self.default_chain = list(default_chain)
        self.is_available = is_available or (lambda provider_id: True)

    def analysis_for(self, request: RoutingRequest) -> Optional[PromptAnalysis]:
        """The caller's analysis, or a fresh one when none was supplied."""
        if request.analysis is not None:
            return request.analysis
        if request.force_llm or self.classifier is None:
            return None
        return self.classifier.analyze_prompt(request.prompt, request.scope)

    def candidates(self, request: RoutingRequest, analysis: Optional[PromptAnalysis] = None) -> List[str]:
        prefs = request.scope.llm_preferences if request.scope else None
        preferred = prefs.preferred if prefs else []
        fallback = prefs.fallback if prefs else []
        excluded = set(prefs.excluded) if prefs else set()

        if request.force_llm:
            ranked: Iterable[str] = [request.force_llm, *fallback]
        else:
            suggested = analysis.suggested_llms if analysis else []
            ranked = [*preferred, *suggested, *fallback, *self.default_chain]

        result: List[str] = []
        for provider_id in ranked:
            if provider_id in result:
                continue
            if provider_id in excluded and provider_id != request.force_llm:
                continue
            config = self.registry.find(provider_id)
            if config is None:
                # A forced provider stays so its missing config is reported
                if provider_id == request.force_llm:
                    result.append(provider_id)
                else:
                    logger.debug("Skipping unknown provider %s", provider_id)
                continue
            if not config.enabled:
                logger.debug("Skipping disabled provider %s", provider_id)
                continue
            if not self.is_available(provider_id):
                logger.info("Skipping provider %s: circuit open", provider_id)
                continue
            result.append(provider_id)
        return result

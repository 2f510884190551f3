"""Login flows and token renewal."""

from marquee.auth.orchestrator import AuthFlow, AuthOrchestrator, HandoffOpener
from marquee.auth.refresh import TokenRefreshManager

__all__ = ["AuthFlow", "AuthOrchestrator", "HandoffOpener", "TokenRefreshManager"]

"""Publishing workspace changes to a hosted repository."""

from .provider import AutomationError, AutomationMode, GitAutomationProvider, detect_intent

__all__ = ["AutomationError", "AutomationMode", "GitAutomationProvider", "detect_intent"]

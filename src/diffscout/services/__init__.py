"""Application services (configuration)."""

from .settings import AnalysisLimits, Settings, SettingsStore

__all__ = ["AnalysisLimits", "Settings", "SettingsStore"]

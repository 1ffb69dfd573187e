"""
SDK for Claim Guard.

Provides a quota-guarded Gemini client for damage analysis.
"""

from .gemini_client import AnalysisResponse, GuardedGeminiClient, MediaFile

__all__ = ["AnalysisResponse", "GuardedGeminiClient", "MediaFile"]

# Services are imported directly where needed; the Gemini client is only
# constructed when an API key is configured:
# from services.tryon_pipeline import build_pipeline
# from services.gemini_orchestrator import GeminiOrchestrator

__all__ = []

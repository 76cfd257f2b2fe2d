"""VibeTrace scan orchestration and finding-translation service."""

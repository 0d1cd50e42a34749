from .analyzer import (
    ANALYSIS_RESULT_SCHEMA,
    Analyzer,
    GeminiAnalyzer,
    build_analyzer,
    strip_code_fences,
)

__all__ = [
    "ANALYSIS_RESULT_SCHEMA",
    "Analyzer",
    "GeminiAnalyzer",
    "build_analyzer",
    "strip_code_fences",
]

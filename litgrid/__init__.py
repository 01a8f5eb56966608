# Top-level package for litgrid, an AI-filled literature table.

# This project implements:
# - PDF → text + first-page preview extraction
# - Pluggable LLM providers (OpenAI-compatible, Gemini, local endpoint)
# - Grid of papers × prompt columns with per-cell generation state
# - Snapshot persistence into a size-bounded key-value store

# Subpackages:
#     utils/         → PDF parsing, key-value stores, IO helpers
#     models/        → LLM client, prompt construction
#     grid/          → Grid state types, manager, persistence
#     experiments/   → Runner scripts
#     visualization/ → Streamlit table app

__version__ = "0.1.0"

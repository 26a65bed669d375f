# =============================================================================
# Services Package — Pipeline Infrastructure
# =============================================================================
#   - llm.py: LLM Gateway protocol + Anthropic / OpenAI-compatible adapters
#   - cancellation.py: per-request CancellationToken, RunController
#   - retry.py: Retry Envelope (bounded exponential backoff)
#   - json_repair.py: lenient JSON parsing of model output
#   - structured.py: retry → parse → validate → fail-open default
#   - citations.py: <claim> tags, bracket citations, <thinking> split
# =============================================================================

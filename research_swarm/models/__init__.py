# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - schemas.py: contracts of every structured LLM call (plans, reviews,
#     verdicts) and the records passed between pipeline stages
#   - requests.py / responses.py: the public HTTP API
#
# The HTTP schemas wrap the pipeline schemas rather than duplicating them,
# so a Plan or Citation looks the same to API clients as it does inside
# the pipeline.
# =============================================================================

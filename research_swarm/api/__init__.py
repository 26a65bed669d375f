# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - experts.py: swarm initialization (document upload, URLs), listing
#     and removal of expert sessions
#   - ask.py: run the research pipeline, resume after clarification,
#     stop the active run
#   - deps.py: shared dependencies (registry, run controller, gateway)
# =============================================================================

# =============================================================================
# Research Swarm
# =============================================================================
# A multi-agent research system for answering questions over uploaded
# documents, explicit URLs and the open web. A lead researcher plans the
# work, a panel of stateful expert sessions gathers facts in parallel,
# and a review board audits the cited report before it ships.
#
# Package structure:
#   research_swarm/
#   ├── api/          → FastAPI route handlers (experts, ask, clarify, stop)
#   ├── agents/       → LangGraph orchestration and one module per role
#   │                    (intent, clarifier, planner, advisor, executor,
#   │                    research, synthesizer, review)
#   ├── models/       → Pydantic V2 schemas (LLM contracts + HTTP API)
#   └── services/     → Infrastructure (LLM gateway, retry, cancellation,
#                        lenient JSON, citations)
# =============================================================================

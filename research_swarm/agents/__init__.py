# =============================================================================
# Agents Package — Research Pipeline Roles and LangGraph Driver
# =============================================================================
#   - experts.py: Expert Registry — one stateful chat session per document
#     plus the standing Web Expert and URL Expert
#   - intent.py: quick-answer vs deep-research classification, quick path
#   - clarifier.py: human-in-the-loop disambiguation questions
#   - planner.py: Lead Researcher plans + the Advisor/Refiner gate
#   - advisor.py: rubric scorecard for a plan (never a verdict)
#   - executor.py: parallel fan-out of plan tasks to experts
#   - research.py: bounded execute → evaluate → pivot loop
#   - synthesizer.py: cited report from all accumulated answers
#   - review.py: Output Reviewer, Arbitrator, bounded debate
#   - orchestrator.py: LangGraph StateGraph wiring all of the above
# =============================================================================

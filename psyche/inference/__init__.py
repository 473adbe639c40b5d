"""Multi-layer psychographic inference.

Data flows one way:
  events -> HeuristicLayer / MLLayer -> EscalationPolicy -> (optional) LLM layer
         -> FusionEngine -> persisted FusedProfile + ProfileUpdateAudit

InferenceOrchestrator is the per-user entry point.
"""

"""LLM Governance Gateway.

Protective infrastructure around every call to the upstream model:
  - TokenBucketRegistry: per (principal, operation) lazy-refill rate limiting
  - CircuitBreakerRegistry: per-operation failure tracking with rolling window
  - RetryPolicy: bounded exponential backoff with jitter and per-attempt timeout
  - PromptGuard: input sanitization / injection neutralizing, output schema validation
  - ModelInvoker: the single "invoke model" primitive (OpenAI-compatible adapter)
  - LLMGateway: composes the above with the CreditLedger and AuditLogger
"""

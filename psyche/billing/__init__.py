"""Per-tenant credit metering.

  - CreditLedger: validated, idempotent consume() with lazy monthly reset and overage
  - CreditLedgerStore: persistence contract (SQL with row locks, or in-memory)
"""

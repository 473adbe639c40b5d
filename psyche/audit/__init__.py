"""Compliance audit trail for governed LLM operations.

  - AuditLogger: builds hashed / PII-masked records, best-effort writes, reports
  - AuditStore: persistence contract (SQL or in-memory)
"""

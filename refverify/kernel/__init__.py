"""
Kernel layer: persistent models, identity, error taxonomy and the audit trail.

Invariants:
- Every committed submission change has exactly one audit entry, written in
  the same transaction
- Audit entries are never updated or deleted
"""

"""
Approval Kernel - multi-level invoice approval workflows

A transactional approval engine with:
- Priority-ranked rule selection per invoice
- Sequential and parallel approval levels
- Time-bounded, amount-capped delegation of authority
- Deadline escalation via a background sweep
- Append-only, hash-verified audit ledger
"""

__version__ = "0.1.0"

"""
Audit package for the Secrets Portal.

Maintains the two change trails and reconciles direct vault changes
against portal-known records:

- app.models: AuditEntry (legacy portal audit log) and ExternalChangeRecord.
- app.trail: append-only, TTL-bounded writers with paged retrieval.
- app.events: parsing of delivered vault change events.
- app.reconciler: resolves events to records and drives trail writes and
  production-change notifications.

Guidelines:
- Audit rows are written once and never mutated; the store expires them.
- Notification failures never block audit correctness.
"""

"""
Rotation compliance package for the Secrets Portal.

Evaluates every secret record against its rotation policy on a schedule
and sends one aggregated reminder digest per scan:

- app.policy: pure due/overdue classification.
- app.digest: grouping, severity and digest text.
- app.scanner: the scheduled scan and notification flag updates.

Guidelines:
- A record is reminded once per rotation; value updates re-arm it.
- Flag updates are sequential and tolerate per-record failures.
"""

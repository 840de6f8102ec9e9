"""
Entitlements package for the Secrets Portal.

Turns an already-verified identity (its group names) into a set of
application/environment grants and answers access questions against it.

- app.grants: Grant model, resolver and access gate.

Grant sets are derived fresh for every request and never persisted.
"""

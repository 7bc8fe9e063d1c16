"""Stack Reconciler (stackrec).

Declarative reconciliation of a small Docker resource graph:
 - networks, image pulls and containers declared per stack
 - files injected into containers (content-hash idempotent)
 - plan / apply / destroy with dependency-ordered, bounded-concurrency execution
 - observed state persisted in sqlite between runs
"""

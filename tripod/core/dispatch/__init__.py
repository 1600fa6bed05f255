# tripod/core/dispatch/__init__.py
"""
Dispatch layer: automatic assignment of new service requests.

- ``strategies`` picks one candidate out of those with capacity left
- ``engine`` evaluates automation rules and persists the outcome
- ``services`` turns engine events into in-app and webhook notifications
- ``jobs`` job-queue handlers run by the background worker

Dispatch code talks to storage only through ``tripod.core.ports``.
"""

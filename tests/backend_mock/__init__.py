"""In-memory resource backend for executor and integration tests.

Key Features:
- In-memory resource store keyed by external id
- Realistic per-kind outputs (endpoints, fqdn, default domain)
- Failure injection: permanent, transient N times, per-call delay
- Call log and concurrency high-water mark for assertions

Usage:
    from backend_mock import MockResourceBackend

    backend = MockResourceBackend(permanent_failures={"backend"})
    result = await Executor(backend, state).run(plan)
    assert backend.call_count("create") == 3
"""

from .backend import MockCall, MockResource, MockResourceBackend

__all__ = [
    "MockCall",
    "MockResource",
    "MockResourceBackend",
]

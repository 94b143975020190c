"""Test utilities for perch applications::

    from perch.testing import TestClient
"""

from perch.testing.client import TestClient, run_lifespan

__all__ = ["TestClient", "run_lifespan"]

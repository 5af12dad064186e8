"""
main.py

Entry point for the Contract Delivery Tracker: Baseline Governance API.

Wires the in-memory infrastructure into the FastAPI app, configures logging,
and starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST  /api/v1/projects                       - create a project (you become admin)
2.  POST  /api/v1/users                          - register a supplier PM and a customer PM
3.  POST  /api/v1/projects/{id}/members          - give them supplier_pm / customer_pm
4.  POST  /api/v1/projects/{id}/plan/items       - build the plan: milestone → deliverable → task
5.  POST  /api/v1/projects/{id}/plan/commit      - promote the plan into the tracker
6.  POST  /api/v1/milestones/{mid}/baseline/sign - supplier signs, then customer signs → Locked
7.  PATCH /api/v1/plan-items/{item_id}           - edit start_date → 409 with a pending change
8.  POST  /api/v1/projects/{id}/pending-changes/draft-variation - turn it into a draft variation
9.  PATCH /api/v1/deliverables/{did}/status      - mark every deliverable Delivered
10. POST  /api/v1/milestones/{mid}/certificate   - generate, then sign as both parties

Authentication note
-------------------
The get_current_user_id dependency expects the raw user UUID as the Bearer
token (e.g. "Bearer 550e8400-e29b-41d4-a716-446655440000").  Requests
without a token act as the seeded system user.  Replace it with a real JWT
implementation before going to production.

Environment
-----------
APP_ENV, HOST, PORT, LOG_LEVEL, GOVERNANCE_FAIL_OPEN,
VARIATION_ROLLBACK_ON_IMPACT_FAILURE, VARIATION_REF_FALLBACK_PREFIX
(see config.py).
"""

import logging

import uvicorn

from api import app, get_uow
from config import get_config
from infrastructure import InMemoryUnitOfWork

settings = get_config()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
    )

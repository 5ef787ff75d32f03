"""FastAPI application and routes.

## API Structure

- /api/login, /api/callback, /api/logout - OIDC browser flow
- /api/dev-login, /api/dev-info - Fallback login helpers
- /api/auth - Account endpoints used by the client (login, signup, reset)
- /api/product-info - Product step of the landed-cost wizard
- /health - Liveness

## Authentication

Protected endpoints require the session cookie set at login, signup or
the OIDC callback. Sessions are stored server side; the cookie only names one.
"""

from landed_cost.api.app import create_app

__all__ = ["create_app"]

"""
Frontend Layer - Portal pages served to the browser
====================================================

Structure:
    frontend/
    ├── core/                        # Shared by every page
    │   ├── portal_session.py       # One PortalSession per sid cookie
    │   ├── route_gate.py           # Loading / anonymous / incomplete / complete
    │   ├── profile_reconciler.py   # Backend profile <-> identity session
    │   └── auth_callback.py        # /auth/callback outcome
    │
    └── pages/
        ├── dashboard.py            # Aggregated dashboard load
        └── handlers.py             # Profile, matching, scholarships, forecaster

Architecture Pattern:
    Browser → FastAPI route → route gate → pages handlers → BackendApiClient
"""

"""
College Portal - backend for the student college-planning portal.
=================================================================

    identity/   Supabase session store, OAuth/recovery PKCE state
    backend/    REST client for the college data backend + fallback policies
    frontend/   portal session, route gate, profile reconciliation, page handlers

Run with ``python -m collegeportal``.
"""

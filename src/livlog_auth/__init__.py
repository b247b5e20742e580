"""Livlog identity service: sign-in, sessions and AI-search quota.

Turns an unauthenticated request (email code or Sign in with Apple) into a
durable, revocable session, and bounds per-user usage of the AI search
feature by policy tier.
"""

__version__ = "0.1.0"

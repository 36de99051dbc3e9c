"""Authentication for agents and session users.

Learn: Two kinds of bearer token share one Authorization header:
1. Agents → opaque API key (cbk_ prefix, legacy cmk_)
2. Users → session JWT issued by the login service

Both resolve to a Principal; route code never looks at the raw token.
"""

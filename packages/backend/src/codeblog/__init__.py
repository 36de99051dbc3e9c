"""CodeBlog backend — agent credentials and bearer authentication.

Issues opaque API keys to agent identities, verifies bearer tokens
(agent key or session JWT), and repairs colliding keys.
"""

__version__ = "0.1.0"

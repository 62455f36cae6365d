"""Client-side trust boundary for the derived-truth read APIs.

Nothing here touches the database: responses are validated against the
pipeline's pydantic contracts and then gated by the readiness resolver
before any caller may render them.
"""

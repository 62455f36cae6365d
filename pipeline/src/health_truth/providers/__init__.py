"""Provider API clients used by resync.

Each client fetches a provider's history and returns ``ProviderItem``
records. Clients never write; resync ingests the items after every page
has been fetched.
"""

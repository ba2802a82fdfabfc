"""hubsync: sync and bulk-migration layer for a shared Supabase workspace."""

__version__ = "1.0.0"

"""
Shared utilities (NOT business logic).

Usage:
    from soundfeed.shared.repository import BaseRepository
    from soundfeed.shared.constants import TimeRange, SyncKind
"""

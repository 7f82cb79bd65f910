"""
soundfeed - listening activity sync service.

Ingests a user's Spotify activity, reconciles it into the relational store
and derives feed events, daily listening stats and ranked top-lists.
"""

"""
Services for the SevaBoard claim board.

- store / postgres_store: catalog store contract and its PostgreSQL adapter
- catalog_sync: live normalized view of categories, items and claims
- claim_allocator: atomic check-and-reserve of selected items
- selection: client-local pick list
- notifications: post-commit confirmation emails
- participant_session: per-connection glue for the WebSocket
- catalog_admin / pledge_report: admin catalog changes and dashboard
"""

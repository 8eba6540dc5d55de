# Supabase tables: group_members, join_requests
# This file documents the expected database schema
# Actual operations are handled through the DataStore adapter in service.py

"""
Expected Supabase table structure:

group_members:
- id: uuid (primary key)
- group_id: uuid (foreign key to groups.id, not null)
- user_id: uuid (foreign key to auth.users.id, not null)
- created_at: timestamp (default: now())
- unique constraint on (group_id, user_id)
- the group owner is never stored here; the owner counts as an implicit member

join_requests:
- id: uuid (primary key)
- group_id: uuid (foreign key to groups.id, not null)
- user_id: uuid (foreign key to auth.users.id, not null)
- status: text (not null, default: 'pending') - values: pending, accepted, rejected
- created_at: timestamp (default: now())
- unique index on (group_id, user_id) where status = 'pending'

Both tables must be part of the supabase_realtime publication.
"""

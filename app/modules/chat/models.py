# Supabase table: messages
# This file documents the expected database schema
# Actual operations are handled through the DataStore adapter in service.py

"""
Expected Supabase table structure:

messages:
- id: uuid (primary key)
- group_id: uuid (foreign key to groups.id, not null)
- sender_id: uuid (foreign key to auth.users.id, not null)
- text: text (not null)
- created_at: timestamp (default: now())

Rows are immutable. The table must be part of the supabase_realtime publication
so inserts reach subscribed chat relays.
"""

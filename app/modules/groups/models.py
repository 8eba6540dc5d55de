# Supabase table: groups
# This file documents the expected database schema
# Actual operations are handled through the DataStore adapter in service.py

"""
Expected Supabase table structure:

groups:
- id: uuid (primary key)
- owner_id: uuid (foreign key to auth.users.id, not null) - creator, implicit member
- project_name: text (not null)
- supervisor_name: text (not null)
- skills_required: text[] (default: '{}')
- skills_needed: text[] (default: '{}')
- project_outcomes: text (nullable)
- max_members: integer (not null, check 2 <= max_members <= 20) - includes the owner
- created_at: timestamp (default: now())

Child rows (group_members, join_requests, messages) reference groups.id. When the
foreign keys are declared ON DELETE CASCADE, set PURGE_GROUP_CHILDREN=false.
"""

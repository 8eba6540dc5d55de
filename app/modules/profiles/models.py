# Supabase table: profiles
# This file documents the expected database schema
# Rows are created by a signup trigger on auth.users; this service only reads them

"""
Expected Supabase table structure:

profiles:
- id: uuid (primary key)
- user_id: uuid (unique, references auth.users.id)
- name: text (not null)
- email: text (not null)
- created_at: timestamp (default: now())
"""

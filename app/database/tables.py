# Relation names in the public schema
PROFILES = "profiles"
GROUPS = "groups"
GROUP_MEMBERS = "group_members"
JOIN_REQUESTS = "join_requests"
MESSAGES = "messages"

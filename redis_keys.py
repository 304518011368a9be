REDIS_USER_KEY = "user:{user_id}" # identity directory hash - id, username / display_name
REDIS_MESSAGE_KEY = "message:{message_id}" # stored message as JSON string
REDIS_ROOM_MESSAGES_KEY = "room:messages:{slug}" # sorted set of message ids scored by timestamp (ms)
REDIS_MESSAGE_SCAN_PATTERN = "message:*"

# **Example `user:{id}` hash fields** (written by the external auth service)
# - `id` = `{userId}`
# - `username` = display name shown to other participants
#
# **Example `message:{id}` value**
# - JSON of `StoredMessage`: id, room, content, sender_id, sender_name,
#   target_id, is_private, timestamp, reply_to, is_edited, edited_at,
#   is_deleted, deleted_at, reactions, revision
#
# Deleted messages keep their `message:{id}` key but are removed from
# `room:messages:{slug}` so history pages and counts skip them.

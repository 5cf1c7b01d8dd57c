REDIS_ROOMS_INDEX_KEY = "rooms:index" # set of every created room id
REDIS_META_KEY = "room:meta:{slug}" # room id
REDIS_USERS_KEY = "room:users:{slug}" # room id - set of occupant user IDs
REDIS_USER_KEY = "room:user:{slug}:{user_id}" # room id + user id - occupant record
REDIS_MESSAGES_KEY = "room:messages:{slug}" # room id - stream of chat messages
REDIS_DISCONNECT_KEY = "conn:{connection_id}:on_disconnect" # connection id - "room_id:user_id" members to purge

REDIS_ROOMS_CHANNEL = "rooms:channel" # directory-wide change notifications
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room slug - meta/occupant changes
REDIS_MESSAGES_CHANNEL = "room:messages:channel:{slug}" # room slug - message log changes

# **Example `room:meta:{id}` hash fields** (values are JSON encoded)
# - `name` = display name
# - `created_at` = epoch ms
# - `last_activity` = epoch ms
# - `message_count` = integer, HINCRBY on every chat message
# - `is_private` = true/false
# - `password` = plaintext, only present for private rooms

# **Example `room:user:{id}:{user_id}` hash fields**
# - `id`, `username`, `color`, `status`
# - `typing`, `composing`, `is_typing`
# - `joined_at`, `last_update` = epoch ms

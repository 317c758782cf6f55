REDIS_MESSAGES_KEY = "room:messages:{slug}" # room id - list of serialized messages, oldest first

# **Example `room:messages:{id}` entry**
# {"username": "ann", "message": "hi", "room": "005", "timestamp": "2026-01-01T12:00:00+00:00", "isSystem": false}

# **TTL**
# - Every append refreshes the list expiry to MESSAGE_TTL_SECONDS + MESSAGE_TTL_BUFFER_SECONDS.
# - Individual entries older than MESSAGE_TTL_SECONDS are filtered out on read.

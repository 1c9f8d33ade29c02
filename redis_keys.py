REDIS_USER_KEY = "user:{user_id}" # hash - user row
REDIS_USERNAME_KEY = "user:by_username:{username}" # string - username -> user id
REDIS_USERS_INDEX = "users:index" # sorted set - user ids scored by store:seq (creation order)

REDIS_REQUEST_KEY = "request:{request_id}" # hash - support request row
REDIS_REQUESTS_INDEX = "requests:index" # sorted set - request ids scored by store:seq (creation order)
REDIS_GUEST_REQUESTS_KEY = "user:requests:{user_id}" # sorted set - request ids owned by a guest
REDIS_USER_ASSIGNED_KEY = "user:assigned:{user_id}" # sorted set - request ids assigned to a staff user

REDIS_MESSAGE_KEY = "message:{message_id}" # hash - chat message row
REDIS_REQUEST_MESSAGES_KEY = "request:messages:{request_id}" # sorted set - message ids scored by store:seq (send order)
REDIS_USER_MESSAGES_KEY = "user:messages:{user_id}" # sorted set - message ids sent by a user

REDIS_EVENTS_CHANNEL = "events:fanout" # pub/sub channel - serialized event envelopes

# **Example `request:{id}` hash fields**
# - `id`, `guest_id`, `email`, `issue`, `description`, `category`
# - `priority` = LOW | MEDIUM | HIGH | URGENT
# - `status` = PENDING | IN_PROGRESS | RESOLVED | CLOSED
# - `assigned_agent` = user id (absent when unassigned)
# - `resolved_at`, `created_at`, `updated_at` = ISO timestamps

ROOM_KEY = "room:{room}" # room id - JSON room record
MESSAGE_KEY = "room:{room}:msg:{seq}" # room id + sequence number - one relayed payload

# **Example `room:{id}` record**
# {"room": "r1", "owner": "alice", "members": ["bob"], "readPos": 0, "writePos": 3}

# **TTL**
# - `room:{id}` lives ROOM_TTL_SECONDS, refreshed on every write and poll.
# - `room:{id}:msg:{seq}` lives MESSAGE_TTL_SECONDS and is never refreshed.
#   Entries are not purged when the room is deleted, they expire on their own.

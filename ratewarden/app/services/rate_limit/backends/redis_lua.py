"""Redis Lua scripts for the shared sliding window.

The whole prune-count-conditional-add step runs as one script so two
processes admitting the same caller cannot both observe a stale count.
"""

# KEYS[1]: sorted set {prefix}{tier}:{identity_key}, score = admission time (ms)
# ARGV[1]: now (ms)
# ARGV[2]: window start (ms); scores <= this are expired
# ARGV[3]: limit
# ARGV[4]: unique member for this request ("{now}-{random}")
# ARGV[5]: key TTL (ms), refreshed on every admission
#
# Returns {admitted (0|1), count, oldest score or ""}.
# The oldest score is returned as a string: Lua numbers are truncated to
# integers on the way out and nil would cut the reply short.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window_start = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]
    local ttl_ms = tonumber(ARGV[5])

    -- Drop expired entries (half-open window: score == window_start is expired)
    redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)

    local count = redis.call('ZCARD', key)

    if count >= limit then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {0, count, oldest[2] or ''}
    end

    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, ttl_ms)

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {1, count + 1, oldest[2] or ''}
"""

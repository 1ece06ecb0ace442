"""Redis Lua scripts for the bucket store.

These scripts run atomically on the Redis server, so the version check and
the write cannot interleave with another instance's update.
"""

# Compare-and-set a bucket hash.
# KEYS[1]: bucket hash, KEYS[2]: per-subject resource index set
# ARGV[1]: expected version ('' = bucket must not exist yet)
# ARGV[2]: tokens, ARGV[3]: last_refill_at (epoch seconds), ARGV[4]: resource
# Returns the new version, or 0 on conflict.
COMPARE_AND_SET_SCRIPT = """
    local current = redis.call('HGET', KEYS[1], 'version')
    local new_version

    if ARGV[1] == '' then
        if current then
            return 0
        end
        new_version = 1
    else
        if (not current) or current ~= ARGV[1] then
            return 0
        end
        new_version = tonumber(current) + 1
    end

    redis.call('HSET', KEYS[1],
        'tokens', ARGV[2],
        'last_refill_at', ARGV[3],
        'version', tostring(new_version))
    redis.call('SADD', KEYS[2], ARGV[4])
    return new_version
"""

# Drop violation records older than a cutoff from the tail of a list.
# The list is newest-first (LPUSH), so old records sit at the tail.
# KEYS[1]: violation list, ARGV[1]: cutoff (epoch seconds)
# Returns the number of records removed.
PURGE_VIOLATIONS_SCRIPT = """
    local removed = 0
    local cutoff = tonumber(ARGV[1])
    while true do
        local last = redis.call('LINDEX', KEYS[1], -1)
        if not last then
            break
        end
        local record = cjson.decode(last)
        if tonumber(record['ts']) >= cutoff then
            break
        end
        redis.call('RPOP', KEYS[1])
        removed = removed + 1
    end
    return removed
"""

import hashlib
import json
import logging
from functools import wraps

import redis
from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)

_client = None
_checked = False


def get_redis():
    """Connect on first use; None when Redis is unreachable or caching is disabled."""
    global _client, _checked
    if _checked:
        return _client
    _checked = True
    url = current_app.config.get('REDIS_URL')
    if not url:
        logger.info("[Cache] REDIS_URL not set, running in no-cache mode")
        return None
    try:
        client = redis.from_url(url, socket_connect_timeout=1)
        client.ping()
        _client = client
        logger.info("[Cache] Redis connected successfully")
    except redis.RedisError as e:
        logger.warning("[Cache] Redis not available (%s); running in no-cache mode", e)
        _client = None
    return _client


def reset_cache_client():
    """Forget the current connection so the next request reconnects."""
    global _client, _checked
    _client = None
    _checked = False


def get_cache_version(client, prefix):
    try:
        v = client.get(f"version:{prefix}")
    except redis.RedisError:
        return "1"
    return v.decode('utf-8') if v else "1"


def generate_cache_key(prefix, version, *args, **kwargs):
    """Key from prefix, prefix version, request path, query string and view arguments."""
    key_parts = [prefix, version, request.path]
    if request.args:
        key_parts.append(json.dumps(request.args.to_dict(flat=False), sort_keys=True))
    key_parts.extend(str(arg) for arg in args)
    if kwargs:
        key_parts.append(json.dumps(kwargs, sort_keys=True, default=str))
    key_str = "|".join(key_parts)
    return f"cache:{hashlib.sha256(key_str.encode()).hexdigest()}"


def invalidate_cache(*prefixes):
    """Bump each prefix's version so existing entries are never read again."""
    client = get_redis()
    if client is None:
        return
    for prefix in prefixes:
        try:
            client.incr(f"version:{prefix}")
            logger.debug("[Cache] Invalidated prefix: %s", prefix)
        except redis.RedisError as e:
            logger.warning("[Cache] Invalidation failed for %s: %s", prefix, e)


def cache_response(prefix, ttl=None):
    """Cache the JSON body of a successful GET view in Redis."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            client = get_redis()
            if client is None or request.method != 'GET':
                return f(*args, **kwargs)

            cache_key = generate_cache_key(prefix, get_cache_version(client, prefix), *args, **kwargs)
            try:
                cached = client.get(cache_key)
                if cached:
                    return jsonify(json.loads(cached))
            except redis.RedisError as e:
                logger.warning("[Cache] Read error: %s", e)

            response = f(*args, **kwargs)
            body, status = (response if isinstance(response, tuple) else (response, 200))[:2]
            if status != 200 or not hasattr(body, 'get_json'):
                return response

            try:
                client.setex(cache_key, ttl or current_app.config.get('CACHE_TTL', 300),
                             json.dumps(body.get_json()))
            except redis.RedisError as e:
                logger.warning("[Cache] Write error: %s", e)
            return response
        return decorated_function
    return decorator

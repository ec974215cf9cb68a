"""Tests for response caching through the request lifecycle."""
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import AsyncClient

from core.redis import RedisClient
from models.user import User
from tests.helpers import UserFactory, auth

UserAndToken = tuple[User, str]


async def _keys(redis_client: RedisClient, prefix: str) -> list[str]:
    return sorted(await redis_client.keys_by_prefix(prefix))


async def test__get_user__miss_then_identical_hit(
    client: AsyncClient, alice: UserAndToken,
) -> None:
    """The second identical request is served from cache byte for byte."""
    user, _ = alice

    first = await client.get(f"/v2/users/{user.id}")
    second = await client.get(f"/v2/users/{user.id}")

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.content == first.content
    assert second.headers["content-type"] == "application/json"


async def test__cache_hit__still_carries_rate_limit_headers(
    client: AsyncClient, alice: UserAndToken,
) -> None:
    """Cached responses count against and report the rate limit."""
    user, _ = alice

    first = await client.get(f"/v2/users/{user.id}")
    second = await client.get(f"/v2/users/{user.id}")

    assert second.headers["X-Cache"] == "HIT"
    remaining = int(second.headers["X-Global-RateLimit-Remaining"])
    assert remaining == int(first.headers["X-Global-RateLimit-Remaining"]) - 1


async def test__cache_keys__partitioned_by_requester(
    client: AsyncClient, alice: UserAndToken, redis_client: RedisClient,
) -> None:
    """The owner's view never leaks into the anonymous bucket."""
    user, token = alice

    anonymous = await client.get(f"/v2/users/{user.id}")
    owner = await client.get(f"/v2/users/{user.id}", headers=auth(token))
    anonymous_again = await client.get(f"/v2/users/{user.id}")

    assert owner.headers["X-Cache"] == "MISS"
    assert owner.json()["email"] == "alice@example.com"
    assert anonymous_again.headers["X-Cache"] == "HIT"
    assert anonymous_again.json()["email"] is None
    assert anonymous.json() == anonymous_again.json()
    assert await _keys(redis_client, f"user:{user.id}:") == [
        f"user:{user.id}:0", f"user:{user.id}:{user.id}",
    ]


async def test__username_path__shares_id_key(
    client: AsyncClient, alice: UserAndToken,
) -> None:
    """Requests by username and by id resolve to the same cache entry."""
    user, _ = alice

    await client.get("/v2/users/alice")
    response = await client.get(f"/v2/users/{user.id}")

    assert response.headers["X-Cache"] == "HIT"


async def test__patch_user__invalidates_every_bucket(
    client: AsyncClient, alice: UserAndToken, redis_client: RedisClient,
) -> None:
    """After an update, both the anonymous and the owner's cached views are dropped."""
    user, token = alice
    await client.get(f"/v2/users/{user.id}")
    await client.get(f"/v2/users/{user.id}", headers=auth(token))
    await client.get("/v2/users/current", headers=auth(token))

    response = await client.patch("/v2/users/current", headers=auth(token), json={"bio": "new bio"})
    assert response.status_code == 200

    assert await _keys(redis_client, f"user:{user.id}:") == []
    assert await _keys(redis_client, "user:current:") == []
    refreshed = await client.get(f"/v2/users/{user.id}")
    assert refreshed.headers["X-Cache"] == "MISS"
    assert refreshed.json()["bio"] == "new bio"


async def test__patch_user__leaves_other_users_cached(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """Invalidation is scoped to the changed user."""
    user, token = alice
    other, _ = bob
    await client.get(f"/v2/users/{other.id}")

    await client.patch(f"/v2/users/{user.id}", headers=auth(token), json={"bio": "x"})

    assert (await client.get(f"/v2/users/{other.id}")).headers["X-Cache"] == "HIT"


async def test__failed_write__does_not_invalidate(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """A rejected update leaves the cache alone."""
    user, _ = alice
    _, bob_token = bob
    await client.get(f"/v2/users/{user.id}")

    response = await client.patch(f"/v2/users/{user.id}", headers=auth(bob_token), json={"bio": "x"})
    assert response.status_code == 403

    assert (await client.get(f"/v2/users/{user.id}")).headers["X-Cache"] == "HIT"


async def test__add_friend__invalidates_friend_profile(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """Adding a friend drops cached views of both users."""
    user, token = alice
    friend, _ = bob
    await client.get(f"/v2/users/{friend.id}")

    response = await client.put(
        f"/v2/users/{user.id}/friends", headers=auth(token), json={"friend_id": friend.id},
    )
    assert response.status_code == 200

    assert (await client.get(f"/v2/users/{friend.id}")).headers["X-Cache"] == "MISS"


async def test__remove_friend_by_username__invalidates_friend(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """Usernames in delete paths resolve to ids for invalidation."""
    user, token = alice
    friend, _ = bob
    await client.put(f"/v2/users/{user.id}/friends", headers=auth(token), json={"friend_id": friend.id})
    await client.get(f"/v2/users/{friend.id}")

    response = await client.delete("/v2/users/alice/friends/bob", headers=auth(token))
    assert response.status_code == 200

    assert (await client.get(f"/v2/users/{friend.id}")).headers["X-Cache"] == "MISS"


async def test__delete_user_by_username__invalidates(
    client: AsyncClient, alice: UserAndToken, redis_client: RedisClient,
) -> None:
    """Deleting by username still drops the user's cached views."""
    user, token = alice
    await client.get(f"/v2/users/{user.id}")

    response = await client.delete("/v2/users/alice", headers=auth(token))
    assert response.status_code == 204

    assert await _keys(redis_client, f"user:{user.id}:") == []


async def test__create_event__invalidates_event_lists(
    client: AsyncClient, alice: UserAndToken,
) -> None:
    """Listing caches are dropped when a new event is created."""
    _, token = alice
    first = await client.get("/v2/events")
    assert first.json()["total"] == 0

    await client.post("/v2/events", headers=auth(token), json={"name": "Open", "visibility": "PUBLIC"})
    response = await client.get("/v2/events")

    assert response.headers["X-Cache"] == "MISS"
    assert response.json()["total"] == 1


async def test__list_cache__keyed_by_query(client: AsyncClient) -> None:
    """Different pages and searches are cached separately."""
    await client.get("/v2/users", params={"page": 1})

    other_page = await client.get("/v2/users", params={"page": 2})
    searched = await client.get("/v2/users", params={"search": "al"})
    same = await client.get("/v2/users", params={"page": 1})

    assert other_page.headers["X-Cache"] == "MISS"
    assert searched.headers["X-Cache"] == "MISS"
    assert same.headers["X-Cache"] == "HIT"


async def test__errors__are_not_cached(client: AsyncClient) -> None:
    """Only 200 responses are cached."""
    await client.get("/v2/users/9999")

    response = await client.get("/v2/users/9999")

    assert response.status_code == 404
    assert response.headers["X-Cache"] == "MISS"


async def test__excluded_paths__bypass_cache(client: AsyncClient, alice: UserAndToken) -> None:
    """Token issuance is never cached or matched against cache rules."""
    _, token = alice

    response = await client.post("/v2/users/current/token", headers=auth(token))

    assert response.status_code == 201
    assert "X-Cache" not in response.headers


async def test__redis_down__requests_still_served(
    client: AsyncClient, alice: UserAndToken, fake_server: FakeServer,
) -> None:
    """With Redis unreachable every request misses and is served fresh."""
    user, _ = alice
    fake_server.connected = False

    first = await client.get(f"/v2/users/{user.id}")
    second = await client.get(f"/v2/users/{user.id}")

    assert first.status_code == second.status_code == 200
    assert second.headers["X-Cache"] == "MISS"


async def test__shared_redis__hit_across_clients(
    client: AsyncClient, alice: UserAndToken, fake_server: FakeServer,
) -> None:
    """Entries live in Redis, so any client of the same server sees them."""
    user, _ = alice
    await client.get(f"/v2/users/{user.id}")

    other = RedisClient(url="redis://fake", client=FakeRedis(server=fake_server))
    await other.connect()
    try:
        assert await other.get(f"user:{user.id}:0") is not None
    finally:
        await other.close()


async def test__add_friend__invalidates_current_user(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """The caller's cached /users/current view picks up the new friend."""
    user, token = alice
    friend, _ = bob
    before = await client.get("/v2/users/current", headers=auth(token))
    assert before.json()["friend_ids"] == []

    response = await client.put(
        f"/v2/users/{user.id}/friends", headers=auth(token), json={"friend_id": friend.id},
    )
    assert response.status_code == 200

    after = await client.get("/v2/users/current", headers=auth(token))
    assert after.headers["X-Cache"] == "MISS"
    assert after.json()["friend_ids"] == [friend.id]


async def test__remove_friend__invalidates_current_user(
    client: AsyncClient, alice: UserAndToken, bob: UserAndToken,
) -> None:
    """Removing a friend drops the cached /users/current view as well."""
    user, token = alice
    friend, _ = bob
    await client.put(f"/v2/users/{user.id}/friends", headers=auth(token), json={"friend_id": friend.id})
    assert (await client.get("/v2/users/current", headers=auth(token))).json()["friend_ids"] == [friend.id]

    response = await client.delete(f"/v2/users/{user.id}/friends/{friend.id}", headers=auth(token))
    assert response.status_code == 200

    after = await client.get("/v2/users/current", headers=auth(token))
    assert after.headers["X-Cache"] == "MISS"
    assert after.json()["friend_ids"] == []


async def test__username_like_excluded_path__still_invalidates(
    client: AsyncClient, make_user: UserFactory,
) -> None:
    """A username containing 'token' is cached and invalidated like any other."""
    user, token = await make_user(
        "token_fan", email="t@example.com", field_privacy={"email": "PUBLIC"},
    )
    first = await client.get(f"/v2/users/{user.id}")
    assert first.json()["email"] == "t@example.com"

    response = await client.patch(
        "/v2/users/token_fan/field_privacy",
        headers=auth(token),
        json={"field_privacy": {"email": "PRIVATE"}},
    )
    assert response.status_code == 200

    after = await client.get(f"/v2/users/{user.id}")
    assert after.headers["X-Cache"] == "MISS"
    assert after.json()["email"] is None


async def test__username_like_excluded_path__is_cached(
    client: AsyncClient, make_user: UserFactory,
) -> None:
    """Exclusions match whole path segments, not username substrings."""
    await make_user("randomly")

    await client.get("/v2/users/randomly")
    response = await client.get("/v2/users/randomly")

    assert response.headers["X-Cache"] == "HIT"

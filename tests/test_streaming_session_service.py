"""
Tests for adaptive streaming sessions.
"""
import asyncio

import pytest

from vidstream.app.errors import InputError, SessionLimitError, SessionNotFoundError
from vidstream.app.services.quality_profile_service import QUALITY_PROFILES
from vidstream.app.services.streaming_session_service import (
    StreamingSessionService, device_height_ceiling, recommend_switch, select_for_bandwidth
)

LADDER = ["240p", "360p", "480p", "720p", "1080p"]


@pytest.fixture
def sessions(redis_client, catalog, clock):
    return StreamingSessionService(redis_client, catalog, inactivity_timeout=300, default_max_sessions=3, clock=clock)


async def _start(sessions, bandwidth=10000, device="desktop", screen=None, user="user-1", claims=None,
                 qualities=LADDER):
    return await sessions.start_session(
        video_id="video-1",
        user_id=user,
        client_bandwidth=bandwidth,
        device_class=device,
        screen_size=screen,
        available_qualities=qualities,
        token_claims=claims,
        manifest_location="https://cdn.test/master.m3u8",
    )


class TestQualitySelection:

    @pytest.mark.parametrize("bandwidth,expected", [
        (10000, "1080p"),
        (5000, "720p"),
        (3000, "480p"),
        (1200, "360p"),
        (500, "240p"),
        (100, "240p"),
    ])
    def test_select_for_bandwidth(self, bandwidth, expected):
        profiles = [QUALITY_PROFILES[n] for n in LADDER]

        assert select_for_bandwidth(profiles, bandwidth).name == expected

    @pytest.mark.parametrize("device,screen,ceiling", [
        ("mobile", "small", 480),
        ("mobile", "large", 720),
        ("mobile", None, 720),
        ("tablet", None, 1080),
        ("desktop", "large", 1080),
        ("tv", None, None),
        (None, None, None),
    ])
    def test_device_ceiling(self, device, screen, ceiling):
        assert device_height_ceiling(device, screen) == ceiling


class TestRecommendSwitch:

    def setup_method(self):
        self.profiles = [QUALITY_PROFILES[n] for n in LADDER]

    def test_low_buffer_steps_down_one(self):
        switch = recommend_switch(self.profiles, QUALITY_PROFILES["720p"], 10000, buffer_seconds=3)

        assert (switch.from_quality, switch.to_quality, switch.reason) == ("720p", "480p", "buffer")

    def test_low_buffer_at_lowest_quality(self):
        assert recommend_switch(self.profiles, QUALITY_PROFILES["240p"], 100, buffer_seconds=1) is None

    def test_healthy_buffer_and_headroom_steps_up(self):
        switch = recommend_switch(self.profiles, QUALITY_PROFILES["480p"], 10000, buffer_seconds=25)

        assert (switch.to_quality, switch.reason) == ("1080p", "bandwidth")

    def test_no_headroom_no_switch(self):
        # 1.5x of 480p total bitrate is 1992 kbps
        assert recommend_switch(self.profiles, QUALITY_PROFILES["480p"], 1900, buffer_seconds=25) is None

    def test_moderate_buffer_holds(self):
        assert recommend_switch(self.profiles, QUALITY_PROFILES["480p"], 10000, buffer_seconds=10) is None

    def test_headroom_without_better_fit(self):
        # 2200 kbps clears 1.5x of 480p but 80% of it still only fits 480p
        assert recommend_switch(self.profiles, QUALITY_PROFILES["480p"], 2200, buffer_seconds=25) is None


class TestSessions:

    async def test_start_session(self, sessions, mock_redis):
        started = await _start(sessions, bandwidth=3000)

        assert started.initial_quality == "480p"
        assert started.manifest_location == "https://cdn.test/master.m3u8"
        assert started.available_qualities == LADDER
        session = await sessions.get_session(started.session_id)
        assert session["current_quality"] == "480p"
        assert session["last_heartbeat"] == "2024-01-01T12:00:00"
        assert started.session_id in await mock_redis.smembers("streaming:sessions")
        assert mock_redis.ttl_of(f"streaming:session:{started.session_id}") <= 300

    async def test_small_mobile_screen_is_capped(self, sessions):
        started = await _start(sessions, bandwidth=50000, device="mobile", screen="small")

        assert started.initial_quality == "480p"
        assert started.available_qualities == ["240p", "360p", "480p"]

    async def test_token_quality_restriction(self, sessions):
        started = await _start(sessions, bandwidth=50000, claims={"qualityRestriction": "720p", "maxSessions": 3})

        assert started.initial_quality == "720p"

    async def test_unknown_qualities_are_ignored(self, sessions):
        started = await _start(sessions, qualities=["720p", "8K"])

        assert started.available_qualities == ["720p"]

    async def test_no_renditions(self, sessions):
        with pytest.raises(InputError):
            await _start(sessions, qualities=[])

    async def test_session_limit(self, sessions):
        claims = {"maxSessions": 2}
        await _start(sessions, claims=claims)
        await _start(sessions, claims=claims)

        with pytest.raises(SessionLimitError):
            await _start(sessions, claims=claims)

        # other users are unaffected
        await _start(sessions, user="user-2", claims=claims)

    async def test_concurrent_starts_cannot_exceed_limit(self, sessions, mock_redis):
        original_sadd = mock_redis.sadd

        async def interleaved_sadd(key, *members):
            # let every other start run up to this point first
            await asyncio.sleep(0)
            return await original_sadd(key, *members)

        mock_redis.sadd = interleaved_sadd
        claims = {"maxSessions": 1}

        results = await asyncio.gather(*[_start(sessions, claims=claims) for _ in range(3)],
                                       return_exceptions=True)

        started = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(started) <= 1
        assert all(isinstance(r, SessionLimitError) for r in rejected)
        live = await mock_redis.smembers("streaming:user_sessions:user-1:video-1")
        assert live == {s.session_id for s in started}
        for r in started:
            assert await sessions.get_session(r.session_id) is not None

    async def test_rejected_start_leaves_no_session_behind(self, sessions, mock_redis):
        claims = {"maxSessions": 1}
        first = await _start(sessions, claims=claims)

        with pytest.raises(SessionLimitError):
            await _start(sessions, claims=claims)

        assert await mock_redis.smembers("streaming:user_sessions:user-1:video-1") == {first.session_id}
        assert await mock_redis.smembers("streaming:sessions") == {first.session_id}

    async def test_ended_sessions_free_their_slot(self, sessions, mock_redis):
        claims = {"maxSessions": 1}
        first = await _start(sessions, claims=claims)
        assert await sessions.end_session(first.session_id)

        second = await _start(sessions, claims=claims)
        mock_redis.expire_now(f"streaming:session:{second.session_id}")

        await _start(sessions, claims=claims)

    async def test_end_unknown_session(self, sessions):
        assert not await sessions.end_session("missing")


class TestHeartbeat:

    async def test_buffer_starvation_steps_down(self, sessions, clock):
        started = await _start(sessions, bandwidth=5000)
        assert started.initial_quality == "720p"
        clock.advance(seconds=10)

        switch = await sessions.heartbeat(started.session_id, watch_time=10, current_bandwidth=5000, buffer_level=3)

        assert switch.to_quality == "480p"
        session = await sessions.get_session(started.session_id)
        assert session["current_quality"] == "480p"
        assert session["quality_switches"] == [{
            "from": "720p", "to": "480p", "reason": "buffer", "timestamp": "2024-01-01T12:00:10",
        }]
        assert session["watch_time"] == 10

    async def test_bandwidth_growth_steps_up(self, sessions):
        started = await _start(sessions, bandwidth=3000)

        switch = await sessions.heartbeat(started.session_id, watch_time=30, current_bandwidth=10000, buffer_level=25)

        assert (switch.from_quality, switch.to_quality) == ("480p", "1080p")

    async def test_steady_state(self, sessions):
        started = await _start(sessions, bandwidth=3000)

        assert await sessions.heartbeat(started.session_id, 30, 3000, 12) is None
        assert (await sessions.get_session(started.session_id))["current_quality"] == "480p"

    async def test_watch_time_never_decreases(self, sessions):
        started = await _start(sessions)
        await sessions.heartbeat(started.session_id, 40, 10000, 12)
        await sessions.heartbeat(started.session_id, 20, 10000, 12)

        assert (await sessions.get_session(started.session_id))["watch_time"] == 40

    async def test_unknown_session(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.heartbeat("missing", 0, 1000, 10)


class TestReaping:

    async def test_reap_inactive_sessions(self, sessions, clock, mock_redis):
        idle = await _start(sessions)
        active = await _start(sessions)

        clock.advance(seconds=200)
        await sessions.heartbeat(active.session_id, 200, 10000, 12)
        clock.advance(seconds=150)

        assert await sessions.reap_expired() == 1
        assert await sessions.get_session(idle.session_id) is None
        assert await sessions.get_session(active.session_id) is not None
        assert await mock_redis.smembers("streaming:sessions") == {active.session_id}

    async def test_reap_drops_index_entries_of_expired_keys(self, sessions, mock_redis):
        started = await _start(sessions)
        mock_redis.expire_now(f"streaming:session:{started.session_id}")

        assert await sessions.reap_expired() == 1
        assert await mock_redis.smembers("streaming:sessions") == set()

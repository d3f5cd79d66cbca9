"""
Tests for the execution engine.

Puppets are real sleeping shim processes; every RPC goes to the in-memory
``FakeNetwork`` and time only moves through the ``FakeClock``.
"""

import asyncio
import os
import signal

import pytest

from replisim.core.fixtures import FixtureFeed
from replisim.core.simulator import METRICS_FORMAT

ALICE_ID = "@peer30000.ed25519"
BOB_ID = "@peer30002.ed25519"

TWO_PUPPETS = ["enter alice", "enter bob", "start alice go", "start bob go"]


async def run_script(make_simulator, lines, **overrides):
    simulator, stream = make_simulator(**overrides)
    passed = await simulator.run(lines)
    return simulator, stream.getvalue().splitlines(), passed


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_passing_script(self, make_simulator):
        simulator, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "stop alice", "stop bob"]
        )
        assert passed
        assert out[:4] == [
            "TAP version 13",
            "ok 1 - enter alice",
            "ok 2 - enter bob",
            "ok 3 - start alice go",
        ]
        assert f"# alice (0 messages) has id {ALICE_ID}" in out
        assert "# logging to alice.txt" in out
        assert f"# stopping alice ({ALICE_ID})" in out
        assert "# bob has been stopped" in out
        assert "1..6" in out
        assert not any(p.is_running for p in simulator.puppets.values())

    @pytest.mark.asyncio
    async def test_has_without_record_fails_and_continues(self, make_simulator):
        simulator, out, passed = await run_script(
            make_simulator,
            [*TWO_PUPPETS, "post alice", "has bob alice@latest", "stop alice"],
        )
        assert not passed
        assert "ok 5 - post alice" in out
        failure = out.index("not ok 6 - has bob alice@latest")
        assert out[failure + 1] == (
            f"# expected bob to have alice; it didn't (feed {ALICE_ID} not stored)"
        )
        assert out[failure + 2] == f"# expected: {ALICE_ID} at sequence 1"
        assert out[failure + 3] == "# actual: no record"
        # the scan continued
        assert "ok 7 - stop alice" in out
        assert "1..7" in out
        # shutdown stops whatever is still running
        assert "# Closing all puppets" in out
        assert not simulator.puppets["bob"].is_running

    @pytest.mark.asyncio
    async def test_has_at_zero_passes_without_record(self, make_simulator):
        _, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "has bob alice@0"]
        )
        assert passed
        assert "ok 5 - has bob alice@0" in out

    @pytest.mark.asyncio
    async def test_has_at_zero_fails_once_the_feed_has_messages(self, make_simulator):
        _, out, passed = await run_script(
            make_simulator,
            [*TWO_PUPPETS, "follow alice bob", "has bob alice@0"],
        )
        assert not passed
        failure = out.index("not ok 6 - has bob alice@0")
        assert ALICE_ID in out[failure + 1]
        assert "1..6" in out

    @pytest.mark.asyncio
    async def test_has_matching_sequence(self, make_simulator, network):
        network.peer(30002).store[ALICE_ID] = 1
        _, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "post alice", "has bob alice@latest"]
        )
        assert passed
        assert out[out.index("ok 6 - has bob alice@latest") + 1] == (
            "# assuming alice@latest => alice@1"
        )

    @pytest.mark.asyncio
    async def test_stop_of_stopped_puppet_fails(self, make_simulator):
        _, out, passed = await run_script(make_simulator, ["enter alice", "stop alice"])
        assert not passed
        assert out[2:4] == [
            "not ok 2 - stop alice",
            "# cannot stop alice: it is not running",
        ]
        assert "1..2" in out

    @pytest.mark.asyncio
    async def test_start_of_running_puppet_fails(self, make_simulator):
        _, out, passed = await run_script(
            make_simulator, ["enter alice", "start alice go", "start alice go"]
        )
        assert not passed
        assert "not ok 3 - start alice go" in out
        assert "# alice is already running" in out


class TestAbort:
    @pytest.mark.asyncio
    async def test_undeclared_puppet(self, make_simulator):
        _, out, passed = await run_script(make_simulator, ["enter alice", "start zed go"])
        assert not passed
        assert out[1] == "ok 1 - enter alice"
        assert out[2] == (
            "Bail out! there is no puppet declared as zed; possible fix: "
            "add `enter zed` before other statements (start zed go)"
        )
        assert not any(line.startswith("1..") for line in out)
        # the summary still runs
        assert "# End of simulation" in out

    @pytest.mark.asyncio
    async def test_blank_line_aborts_before_execution(self, make_simulator):
        _, out, passed = await run_script(make_simulator, ["enter alice", "", "enter bob"])
        assert not passed
        assert out[1].startswith("Bail out! line 2 was empty")
        assert not any(line.startswith("ok ") for line in out)

    @pytest.mark.asyncio
    async def test_duplicate_enter(self, make_simulator):
        _, out, _ = await run_script(make_simulator, ["enter alice", "enter alice"])
        assert "Bail out! puppet alice was declared twice (enter alice)" in out

    @pytest.mark.asyncio
    async def test_unknown_implementation(self, make_simulator):
        _, out, passed = await run_script(make_simulator, ["enter alice", "start alice rust"])
        assert not passed
        assert out[2] == (
            "Bail out! no such language implementation passed to simulator on "
            "startup (rust) (start alice rust)"
        )

    @pytest.mark.asyncio
    async def test_load_without_fixtures(self, make_simulator):
        _, out, _ = await run_script(make_simulator, ["enter alice", "load alice @a.ed25519"])
        assert out[2].startswith("Bail out! no fixtures provided with --fixtures")

    @pytest.mark.asyncio
    async def test_bad_caps(self, make_simulator):
        _, out, _ = await run_script(make_simulator, ["enter alice", "caps alice not*base64"])
        assert out[2].startswith("Bail out! caps not*base64 was not a valid base64 sequence")


class TestFixtures:
    @pytest.mark.asyncio
    async def test_load_seeds_sequence(self, make_simulator, network):
        identities = {"@a.ed25519": FixtureFeed(folder="puppet-00000", latest=4)}
        simulator, out, passed = await run_script(
            make_simulator,
            ["enter alice", "load alice @a.ed25519", "start alice go", "post alice"],
            identities=identities,
        )
        assert passed
        alice = simulator.puppets["alice"]
        assert alice.feed_id == "@a.ed25519"
        assert alice.secret_folder == "puppet-00000"
        assert alice.seqno == 5
        # fixture-backed puppets keep their loaded identity
        assert not any(method == "whoami" for _, method, _ in network.calls)
        assert "# alice (0 messages) has id @a.ed25519" in out

    @pytest.mark.asyncio
    async def test_unknown_fixture_id(self, make_simulator):
        _, out, _ = await run_script(
            make_simulator, ["enter alice", "load alice @missing"], identities={}
        )
        assert out[2] == "Bail out! cannot find id @missing in the fixtures (load alice @missing)"


class TestTime:
    @pytest.mark.asyncio
    async def test_wait_credits_running_puppets(self, make_simulator, clock):
        simulator, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "wait 500", "stop alice", "stop bob"]
        )
        assert passed
        alice, bob = simulator.puppets["alice"], simulator.puppets["bob"]
        # each start settles for one second
        assert alice.slept == pytest.approx(2.5)
        assert bob.slept == pytest.approx(1.5)
        assert alice.total_time == pytest.approx(2.5)
        assert bob.total_time == pytest.approx(1.5)
        assert simulator.slept == pytest.approx(2.5)
        assert clock.sleeps == [1.0, 1.0, 0.5]

        assert "# Total time: 2.500s" in out
        assert "# Active time: 0.000s" in out
        assert "# Puppet count: 2" in out
        header = out.index(
            "# " + METRICS_FORMAT.format("Puppet", "Total time", "Active time", "# messages")
        )
        assert out[header + 1].split() == ["#", "alice", "2.500s", "0.000s", "0"]
        assert out[header + 2].split() == ["#", "bob", "1.500s", "0.000s", "0"]

    @pytest.mark.asyncio
    async def test_connect_settles(self, make_simulator, network, clock):
        _, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "connect alice bob", "disconnect alice bob"]
        )
        assert passed
        assert clock.sleeps == [1.0, 1.0, 0.5, 0.5]
        assert network.peer(30000).connections == [
            "conn.connect net:localhost:30002~shs:peer30002",
            "conn.disconnect net:localhost:30002~shs:peer30002",
        ]


class TestWaitUntil:
    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, make_simulator, clock):
        _, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "post alice", "waituntil bob alice@latest"]
        )
        assert not passed
        reason = "history stream closed before message arrived"
        failure = out.index("not ok 6 - waituntil bob alice@latest")
        assert out[failure - 3 : failure] == [
            f"# waituntil had an error on attempt {n}/3 ({reason})" for n in (1, 2, 3)
        ]
        assert out[failure + 1] == f"# bob expected alice@1: {reason}"
        # backoff between attempts, none after the last
        assert clock.sleeps[-2:] == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, make_simulator, network):
        network.peer(30002).store[ALICE_ID] = 1
        network.fail("createHistoryStream", 2)
        _, out, passed = await run_script(
            make_simulator, [*TWO_PUPPETS, "post alice", "waituntil bob alice@latest"]
        )
        assert passed
        ok = out.index("ok 6 - waituntil bob alice@latest")
        assert out[ok + 1] == "# assuming alice@latest => alice@1"


class TestMessages:
    @pytest.mark.asyncio
    async def test_follow_counts_even_when_publish_fails(self, make_simulator, network):
        network.fail("publish", 1)
        simulator, out, passed = await run_script(
            make_simulator,
            [
                *TWO_PUPPETS,
                "follow alice bob",
                "follow alice bob",
                "isfollowing alice bob",
                "isnotfollowing alice bob",
                "unfollow alice bob",
                "isnotfollowing alice bob",
            ],
        )
        assert not passed
        assert "not ok 5 - follow alice bob" in out
        assert "ok 6 - follow alice bob" in out
        assert "ok 7 - isfollowing alice bob" in out
        assert "not ok 8 - isnotfollowing alice bob" in out
        assert f"# {ALICE_ID} should not follow {BOB_ID}" in out
        assert "ok 10 - isnotfollowing alice bob" in out
        assert simulator.puppets["alice"].seqno == 3
        assert network.peer(30000).published[-1] == {
            "type": "contact",
            "contact": BOB_ID,
            "following": False,
        }

    @pytest.mark.asyncio
    async def test_publish_and_log(self, make_simulator, network):
        simulator, out, passed = await run_script(
            make_simulator,
            [
                "enter alice",
                "start alice go",
                "publish alice (type about) (name alice)",
                "log alice 1",
            ],
        )
        assert passed
        assert network.peer(30000).published == [{"type": "about", "name": "alice"}]
        assert simulator.puppets["alice"].seqno == 1
        log = out.index("ok 4 - log alice 1")
        assert out[log + 1] == "# {"

    @pytest.mark.asyncio
    async def test_restart_reuses_port_and_checks_identity(self, make_simulator, network):
        simulator, stream = make_simulator()

        async def swap_identity(seconds):
            # alice comes back with a new key after her first stop
            if simulator.puppets["alice"].total_time > 0:
                network.peer(30000).feed_id = "@imposter.ed25519"
            await clock_sleep(seconds)

        clock_sleep = simulator._sleep
        simulator._sleep = swap_identity
        passed = await simulator.run(
            ["enter alice", "start alice go", "stop alice", "start alice go"]
        )
        out = stream.getvalue().splitlines()
        assert not passed
        assert simulator.puppets["alice"].ports.primary == 30000
        failure = out.index("not ok 4 - start alice go")
        assert out[failure + 1] == "# alice came back with a different identity"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_the_scan(self, make_simulator):
        simulator, stream = make_simulator()
        clock_sleep = simulator._sleep

        async def cancelling_sleep(seconds):
            await clock_sleep(seconds)
            simulator.cancel("stop requested")
            simulator.cancel("ignored second request")

        simulator._sleep = cancelling_sleep
        passed = await simulator.run(["enter alice", "wait 10", "enter bob"])
        out = stream.getvalue().splitlines()

        assert not passed
        assert out[1:5] == [
            "ok 1 - enter alice",
            "# stop requested",
            "ok 2 - wait 10",
            "# Context canceled, stopping execution",
        ]
        assert "ok 3 - enter bob" not in out
        assert "# ignored second request" not in out
        assert not any(line.startswith("1..") for line in out)
        assert "# End of simulation" in out

    @pytest.mark.asyncio
    @pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
    async def test_sigterm_cancels_the_run(self, make_simulator):
        simulator, stream = make_simulator()
        clock_sleep = simulator._sleep

        async def interrupted_sleep(seconds):
            await clock_sleep(seconds)
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(100):
                if simulator.is_cancelled:
                    break
                await asyncio.sleep(0.01)

        simulator._sleep = interrupted_sleep
        passed = await simulator.run(["enter alice", "wait 10", "enter bob"])
        out = stream.getvalue().splitlines()

        assert not passed
        assert "# received shutdown signal, shutting down (signal SIGTERM)" in out
        assert "# Context canceled, stopping execution" in out
        assert "ok 3 - enter bob" not in out
        assert "# End of simulation" in out
        # the handler is gone once the run returns
        assert not asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM)

"""
Session behaviour driven by scripted engines: batching, error policy,
restarts, network recovery and the silence watchdog.

Delays are shrunk to milliseconds so the suite runs offline and fast.

    pytest tests/test_session.py -v
"""
from __future__ import annotations

import asyncio
import unittest
import warnings
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from batch_stt.engine_scripted import Pause, Say, ScriptedEngineFactory, Step
from batch_stt.errors import (
    MSG_INSECURE_CONTEXT,
    MSG_NO_MICROPHONE,
    MSG_NO_NETWORK,
    MSG_NO_SPEECH,
    MSG_NOT_SUPPORTED,
    MSG_PERMISSION_DENIED,
    MSG_RESTART_EXHAUSTED,
    MSG_SILENCE_TIMEOUT,
    MSG_START_FAILED,
    MSG_START_NO_MICROPHONE,
    MSG_START_NO_NETWORK,
    MSG_UNKNOWN_ENGINE_ERROR,
    MSG_UNSTABLE_CONNECTION,
)
from batch_stt.events import AudioEnded, AudioStarted, EngineEnded, EngineError
from batch_stt import session as session_module
from batch_stt.session import BatchSpeechSession, SessionConfig, SessionState


class StaticConnectivity:
    """Answers connectivity checks from a list; the last answer repeats."""

    def __init__(self, *answers: bool) -> None:
        self._answers = list(answers) or [True]
        self.calls = 0

    async def check(self) -> bool:
        answer = self._answers[min(self.calls, len(self._answers) - 1)]
        self.calls += 1
        return answer


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    def make_session(
            self,
            scripts: Sequence[Sequence[Step]] = (),
            *,
            connectivity: Optional[StaticConnectivity] = None,
            microphone: bool = True,
            supported: bool = True,
            secure: bool = True,
            fail_start: Optional[Exception] = None,
            silence_timeout_ms: int = 5000,
            max_restart_attempts: int = 5,
            network_retry_delay_ms: int = 0,
    ) -> Tuple[BatchSpeechSession, ScriptedEngineFactory]:
        # one ordered log of every callback, as (kind, payload)
        self.log: List[Tuple[str, object]] = []

        async def microphone_probe() -> bool:
            return microphone

        factory = ScriptedEngineFactory(scripts, supported=supported, secure=secure, fail_start=fail_start)
        session = BatchSpeechSession(
            SessionConfig(
                on_batch_complete=lambda text, ts: self.log.append(("batch", text)),
                on_live_transcription=lambda text: self.log.append(("live", text)),
                on_error=lambda message: self.log.append(("error", message)),
                on_status_change=lambda recording: self.log.append(("status", recording)),
                silence_timeout_ms=silence_timeout_ms,
                max_restart_attempts=max_restart_attempts,
                network_retry_delay_ms=network_retry_delay_ms,
                silence_check_interval_ms=10,
            ),
            factory,
            connectivity=connectivity or StaticConnectivity(True),
            microphone_probe=microphone_probe,
        )
        self.addAsyncCleanup(session.stop)
        return session, factory

    def entries(self, kind: str) -> list:
        return [payload for k, payload in self.log if k == kind]

    def without_live(self) -> list:
        return [entry for entry in self.log if entry[0] != "live"]


class TestBatching(SessionTestCase):

    async def test_interim_and_final_results_become_two_batches(self) -> None:
        session, factory = self.make_session([[
            Say("The sky is", is_final=False),
            Say("The sky is blue."),
            Say("um", is_final=False),
            Say("The ocean is vast."),
        ]])
        await session.start()
        self.assertTrue(session.is_recording)
        await factory.engines[0].played.wait()
        await session.drain()

        self.assertEqual(["The sky is blue.", "The ocean is vast."], self.entries("batch"))
        live = self.entries("live")
        self.assertIn("The sky is", live)
        self.assertIn("um", live)
        self.assertEqual("", live[-1])
        self.assertEqual(SessionState.LISTENING, session.state)

        await session.stop()
        await session.stop()
        self.assertEqual([True, False], self.entries("status"))
        self.assertEqual([], self.entries("error"))
        self.assertEqual(2, len(self.entries("batch")))
        self.assertEqual(SessionState.STOPPED, session.state)

    async def test_stop_flushes_pending_text(self) -> None:
        session, factory = self.make_session([[Say("Almost a sen"), Say("tence", is_final=False)]])
        await session.start()
        await factory.engines[0].played.wait()
        await session.drain()
        self.assertEqual([], self.entries("batch"))

        await session.stop()
        self.assertEqual(1, len(self.entries("batch")))
        self.assertEqual(("status", False), self.log[-1])
        self.assertTrue(session.manually_stopped)
        self.assertFalse(session.watchdog_armed)

    async def test_audio_end_forces_flush(self) -> None:
        session, factory = self.make_session([[AudioStarted(), Say("pending words", is_final=False), AudioEnded()]])
        await session.start()
        await factory.engines[0].played.wait()
        await session.drain()

        self.assertEqual(["pending words"], self.entries("batch"))
        self.assertFalse(session.watchdog_armed)
        self.assertTrue(session.is_recording)

    async def test_start_while_recording_is_ignored(self) -> None:
        session, factory = self.make_session()
        await asyncio.gather(session.start(), session.start())
        await session.start()
        await session.drain()
        self.assertEqual(1, len(factory.engines))
        self.assertEqual([True], self.entries("status"))

    async def test_stop_before_start_is_a_no_op(self) -> None:
        session, _ = self.make_session()
        await session.stop()
        self.assertEqual([], self.log)
        self.assertEqual(SessionState.IDLE, session.state)


class TestStartFailures(SessionTestCase):

    async def assert_start_fails(self, message: str, **kwargs) -> None:
        session, factory = self.make_session(**kwargs)
        await session.start()
        self.assertFalse(session.is_recording)
        self.assertEqual(SessionState.IDLE, session.state)
        self.assertEqual([("status", False), ("error", MSG_START_FAILED.format(reason=message))], self.log)

    async def test_unsupported_environment(self) -> None:
        await self.assert_start_fails(MSG_NOT_SUPPORTED, supported=False)

    async def test_insecure_context(self) -> None:
        await self.assert_start_fails(MSG_INSECURE_CONTEXT, secure=False)

    async def test_offline(self) -> None:
        await self.assert_start_fails(MSG_START_NO_NETWORK, connectivity=StaticConnectivity(False))

    async def test_microphone_denied(self) -> None:
        await self.assert_start_fails(MSG_START_NO_MICROPHONE, microphone=False)

    async def test_engine_start_raises(self) -> None:
        await self.assert_start_fails("connection refused", fail_start=ConnectionError("connection refused"))

    async def test_can_start_again_after_failure(self) -> None:
        connectivity = StaticConnectivity(False, True)
        session, factory = self.make_session(connectivity=connectivity)
        await session.start()
        self.assertFalse(session.is_recording)
        await session.start()
        self.assertTrue(session.is_recording)
        self.assertEqual(1, len(factory.engines))


class TestErrorPolicy(SessionTestCase):

    async def test_permission_denied_is_terminal(self) -> None:
        session, factory = self.make_session([[Say("Partial words", is_final=False), EngineError("not-allowed")]])
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(
            [("status", True), ("batch", "Partial words"), ("status", False), ("error", MSG_PERMISSION_DENIED)],
            self.without_live(),
        )
        self.assertTrue(session.manually_stopped)
        self.assertFalse(session.watchdog_armed)
        self.assertEqual(1, len(factory.engines))

    async def test_audio_capture_is_terminal(self) -> None:
        session, _ = self.make_session([[EngineError("audio-capture")]])
        await session.start()
        await wait_until(lambda: not session.is_recording)
        self.assertEqual([MSG_NO_MICROPHONE], self.entries("error"))

    async def test_unknown_error_is_reported_with_its_kind(self) -> None:
        session, _ = self.make_session([[EngineError("language-not-supported")]])
        await session.start()
        await wait_until(lambda: not session.is_recording)
        self.assertEqual([MSG_UNKNOWN_ENGINE_ERROR.format(error="language-not-supported")], self.entries("error"))

    async def test_end_restarts_are_bounded(self) -> None:
        session, factory = self.make_session([[EngineEnded()]] * 10, max_restart_attempts=2)
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(3, len(factory.engines))
        self.assertEqual([MSG_RESTART_EXHAUSTED], self.entries("error"))
        self.assertEqual([True, False], self.entries("status"))

    async def test_no_speech_restarts_are_bounded(self) -> None:
        session, factory = self.make_session([[EngineError("no-speech")]] * 10, max_restart_attempts=2)
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(3, len(factory.engines))
        self.assertEqual([MSG_NO_SPEECH], self.entries("error"))

    async def test_results_reset_the_restart_count(self) -> None:
        session, factory = self.make_session(
            [[EngineEnded()], [Say("Still here."), EngineEnded()], [EngineEnded()], []],
            max_restart_attempts=2,
        )
        await session.start()
        await wait_until(lambda: len(factory.engines) == 4)
        await factory.engines[3].played.wait()
        await session.drain()

        self.assertTrue(session.is_recording)
        self.assertEqual(["Still here."], self.entries("batch"))
        self.assertEqual([], self.entries("error"))
        self.assertEqual(2, session.restart_attempts)

    async def test_abort_waits_for_end_and_is_not_counted(self) -> None:
        session, factory = self.make_session(
            [[EngineError("aborted"), Pause(0.2), EngineEnded()], [Say("Fine.")]],
            max_restart_attempts=1,
        )
        await session.start()
        await asyncio.sleep(0.05)
        await session.drain()
        self.assertEqual(1, len(factory.engines))
        self.assertEqual(0, session.restart_attempts)
        self.assertTrue(session.is_recording)

        await wait_until(lambda: len(factory.engines) == 2)
        await factory.engines[1].played.wait()
        await session.drain()
        self.assertEqual(["Fine."], self.entries("batch"))
        self.assertEqual([True], self.entries("status"))
        self.assertEqual([], self.entries("error"))

    async def test_aborted_restarts_are_bounded(self) -> None:
        session, factory = self.make_session(
            [[EngineError("aborted"), EngineEnded()]] * 40,
            max_restart_attempts=2,
        )
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(3, len(factory.engines))
        self.assertEqual([MSG_RESTART_EXHAUSTED], self.entries("error"))
        self.assertEqual([True, False], self.entries("status"))

    async def test_stop_cancels_pending_restart(self) -> None:
        session, factory = self.make_session([[EngineEnded()]], network_retry_delay_ms=200)
        await session.start()
        await wait_until(lambda: session.state == SessionState.RECONNECTING)

        await session.stop()
        await asyncio.sleep(0.3)
        self.assertEqual(1, len(factory.engines))
        self.assertEqual([], self.entries("error"))
        self.assertEqual([True, False], self.entries("status"))


class TestNetworkRecovery(SessionTestCase):

    async def test_reconnects_when_reachable(self) -> None:
        session, factory = self.make_session(
            [[EngineError("network"), Say("Ghost words.")], [Say("Back online.")]],
        )
        await session.start()
        await wait_until(lambda: len(factory.engines) == 2)
        await factory.engines[1].played.wait()
        await session.drain()

        self.assertTrue(session.is_recording)
        self.assertFalse(session.is_reconnecting)
        self.assertEqual(["Back online."], self.entries("batch"))
        self.assertEqual([], self.entries("error"))
        self.assertEqual(1, factory.engines[0].abort_calls)

    async def test_unreachable_is_terminal(self) -> None:
        session, factory = self.make_session(
            [[Say("Last words", is_final=False), EngineError("network")]],
            connectivity=StaticConnectivity(True, False),
        )
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(1, len(factory.engines))
        self.assertEqual(["Last words"], self.entries("batch"))
        self.assertEqual([MSG_NO_NETWORK], self.entries("error"))
        self.assertFalse(session.is_reconnecting)

    async def test_exhausted_budget_reports_unstable_connection(self) -> None:
        session, factory = self.make_session([[EngineError("network")]], max_restart_attempts=0)
        await session.start()
        await wait_until(lambda: not session.is_recording)

        self.assertEqual(1, len(factory.engines))
        self.assertEqual([MSG_UNSTABLE_CONNECTION], self.entries("error"))

    async def test_repeated_network_errors_start_one_recovery(self) -> None:
        session, factory = self.make_session(
            [[EngineError("network"), EngineError("network")], []],
            network_retry_delay_ms=50,
        )
        await session.start()
        await wait_until(lambda: len(factory.engines) == 2)
        await asyncio.sleep(0.1)

        self.assertEqual(2, len(factory.engines))
        self.assertEqual(1, session.restart_attempts)
        self.assertTrue(session.is_recording)


class TestSilenceWatchdog(SessionTestCase):

    async def test_silence_stops_the_session_once(self) -> None:
        session, _ = self.make_session([[]], silence_timeout_ms=50)
        await session.start()
        await wait_until(lambda: not session.is_recording)
        await asyncio.sleep(0.1)

        self.assertEqual([MSG_SILENCE_TIMEOUT], self.entries("error"))
        self.assertEqual([True, False], self.entries("status"))
        self.assertFalse(session.watchdog_armed)

    async def test_speech_keeps_the_session_alive(self) -> None:
        script = []
        for i in range(6):
            script += [Pause(0.03), Say(f"Sentence number {i}.")]
        session, factory = self.make_session([script], silence_timeout_ms=100)
        await session.start()
        await factory.engines[0].played.wait()
        await session.drain()

        self.assertTrue(session.is_recording)
        self.assertEqual([], self.entries("error"))
        self.assertTrue(session.watchdog_armed)


class TestModuleSource(unittest.TestCase):

    def test_session_module_compiles_without_warnings(self) -> None:
        source = Path(session_module.__file__).read_text(encoding="utf-8")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, session_module.__file__, "exec")

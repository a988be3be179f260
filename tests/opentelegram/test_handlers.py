import os
import signal
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from bridge_fakes import (
    FakeBackend,
    FakeTelegramClient,
    callback_update,
    make_config,
    message_update,
    write_fake_ffmpeg,
)

from opentelegram import handlers
from opentelegram.auth import AuthState, build_bootstrap_text
from opentelegram.backend import BackendError
from opentelegram.main import install_signal_handlers, run_bridge, run_self_test
from opentelegram.session_registry import SessionRegistry, encode_model_callback

PROVIDERS = [
    {"id": "opencode", "name": "OpenCode Zen", "models": {"minimax-m2.5-free": {}}},
    {"id": "anthropic", "name": "Anthropic", "models": {"claude-sonnet-4": {}, "claude-haiku-4": {}}},
]


def make_state(backend, allowed=None, started_at=0):
    return handlers.BridgeState(
        auth=AuthState(allowed_user_ids=set(allowed if allowed is not None else {42}), started_at=started_at),
        registry=SessionRegistry(backend, "opencode/minimax-m2.5-free"),
        backend=backend,
    )


def dispatch(state, config, client, update):
    worker = handlers.handle_update(state, config, client, update)
    if worker is not None:
        worker.join(timeout=20)
    return worker


class TextFlowTests(unittest.TestCase):
    def test_text_message_round_trip(self):
        client = FakeTelegramClient()
        backend = FakeBackend(response={"parts": [{"type": "text", "text": "hi there"}]})
        state = make_state(backend)

        dispatch(state, make_config(), client, message_update(1, "hello"))

        self.assertEqual(backend.prompts[0]["session_id"], "ses_1")
        self.assertEqual(backend.prompts[0]["parts"], [{"type": "text", "text": "hello"}])
        self.assertEqual(str(backend.prompts[0]["model"]), "opencode/minimax-m2.5-free")
        self.assertEqual(
            client.texts(),
            ["🤔 Processing your message...\n\n⏳ Processing...", "hi there"],
        )
        self.assertEqual(client.deleted, [(42, client.messages[0]["message_id"])])
        self.assertIn((42, "typing"), client.chat_actions)

    def test_second_message_reuses_session(self):
        client = FakeTelegramClient()
        backend = FakeBackend()
        state = make_state(backend)
        dispatch(state, make_config(), client, message_update(1, "one"))
        dispatch(state, make_config(), client, message_update(2, "two"))
        self.assertEqual(backend.created, 1)
        self.assertEqual({prompt["session_id"] for prompt in backend.prompts}, {"ses_1"})

    def test_backend_error_is_reported(self):
        client = FakeTelegramClient()
        backend = FakeBackend()
        backend.prompt_error = BackendError({"message": "model overloaded"})
        dispatch(make_state(backend), make_config(), client, message_update(1, "hello"))
        self.assertEqual(client.texts()[-1], 'Error: OpenCode API error: {"message": "model overloaded"}')
        self.assertEqual(len(client.deleted), 1)

    def test_long_reply_is_chunked(self):
        client = FakeTelegramClient()
        backend = FakeBackend(response={"parts": [{"type": "text", "text": "z" * 8500}]})
        dispatch(make_state(backend), make_config(), client, message_update(1, "hello"))
        self.assertEqual([len(text) for text in client.texts()[1:]], [4000, 4000, 500])


class AuthorizationFlowTests(unittest.TestCase):
    def test_stale_message_is_dropped_silently(self):
        client = FakeTelegramClient()
        backend = FakeBackend()
        state = make_state(backend, started_at=1000)
        worker = dispatch(state, make_config(), client, message_update(1, "hello", date=999))
        self.assertIsNone(worker)
        self.assertEqual(client.messages, [])
        self.assertEqual(backend.prompts, [])

    def test_unknown_user_gets_instruction(self):
        client = FakeTelegramClient()
        dispatch(make_state(FakeBackend()), make_config(), client, message_update(1, "hello", user_id=7))
        self.assertEqual(len(client.messages), 1)
        self.assertIn("Add user 7 to TELEGRAM_ALLOWED_USERS", client.texts()[0])

    def test_first_user_bootstraps_and_requests_restart(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / ".env"
            env_path.write_text("TELEGRAM_BOT_TOKEN=abc\nTELEGRAM_ALLOWED_USERS=0\n", encoding="utf-8")
            config = make_config(allowed_user_ids=set(), env_path=str(env_path))
            client = FakeTelegramClient()
            backend = FakeBackend()
            state = make_state(backend, allowed=set())

            dispatch(state, config, client, message_update(1, "hello", user_id=42))
            dispatch(state, config, client, message_update(2, "hello", user_id=43))

            self.assertTrue(state.is_restart_requested())
            self.assertEqual(len(client.messages), 1)
            self.assertIn("42", client.texts()[0])
            self.assertIn("TELEGRAM_ALLOWED_USERS=42", env_path.read_text(encoding="utf-8").splitlines())
            self.assertEqual(backend.prompts, [])

    def test_failed_admin_notice_still_saves_user_and_restarts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / ".env"
            config = make_config(allowed_user_ids=set(), env_path=str(env_path))
            client = FakeTelegramClient()
            client.fail_send_texts.add(build_bootstrap_text(42))
            state = make_state(FakeBackend(), allowed=set())

            dispatch(state, config, client, message_update(1, "hello", user_id=42))

            self.assertTrue(state.is_restart_requested())
            self.assertIn("TELEGRAM_ALLOWED_USERS=42", env_path.read_text(encoding="utf-8").splitlines())
            self.assertEqual(client.messages, [])

    def test_failed_env_write_lets_next_message_bootstrap(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeTelegramClient()
            state = make_state(FakeBackend(), allowed=set())
            unwritable = make_config(allowed_user_ids=set(), env_path=tmpdir)

            with self.assertRaises(OSError):
                handlers.handle_update(state, unwritable, client, message_update(1, "hello", user_id=42))
            self.assertFalse(state.auth.bootstrapped)
            self.assertFalse(state.is_restart_requested())

            env_path = Path(tmpdir) / ".env"
            config = make_config(allowed_user_ids=set(), env_path=str(env_path))
            dispatch(state, config, client, message_update(2, "hi", user_id=42))
            self.assertTrue(state.is_restart_requested())
            self.assertIn("TELEGRAM_ALLOWED_USERS=42", env_path.read_text(encoding="utf-8").splitlines())
            self.assertEqual(client.texts(), [build_bootstrap_text(42)])

    def test_run_bridge_exits_cleanly_after_bootstrap(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / ".env"
            config = make_config(allowed_user_ids=set(), env_path=str(env_path))
            client = FakeTelegramClient(updates=[[message_update(5, "hello"), message_update(6, "again")]])

            exit_code = run_bridge(config, enable_sync=False, client=client, backend=FakeBackend())

            self.assertEqual(exit_code, 0)
            self.assertEqual(len(client.messages), 1)
            self.assertEqual(client.get_updates_calls[-1], (6, 0))
            self.assertIn("TELEGRAM_ALLOWED_USERS=42", env_path.read_text(encoding="utf-8"))

    def test_callback_from_non_member_is_refused(self):
        client = FakeTelegramClient()
        state = make_state(FakeBackend(providers=PROVIDERS))
        worker = dispatch(state, make_config(), client, callback_update(1, "m:anthropic/claude-sonnet-4", user_id=7))
        self.assertIsNone(worker)
        self.assertTrue(client.callback_answers[0][2])
        self.assertEqual(str(state.registry.get_model(42)), "opencode/minimax-m2.5-free")


class CommandTests(unittest.TestCase):
    def setUp(self):
        self.client = FakeTelegramClient()
        self.backend = FakeBackend(
            providers=PROVIDERS,
            sessions=[{"id": f"ses_{index:04d}abcdef", "title": f"Chat {index}"} for index in range(12)],
        )
        self.state = make_state(self.backend)
        self.config = make_config()

    def send(self, text):
        dispatch(self.state, self.config, self.client, message_update(len(self.client.messages) + 1, text))

    def test_start_shows_current_model(self):
        self.send("/start")
        self.assertIn("Current Model: opencode/minimax-m2.5-free", self.client.texts()[0])
        self.assertEqual(self.backend.prompts, [])

    def test_help_and_unknown_commands(self):
        self.send("/help@opentelegram_bot")
        self.send("/unknown")
        self.assertEqual(len(self.client.messages), 1)
        self.assertIn("/models", self.client.texts()[0])

    def test_new_creates_session(self):
        self.send("/new")
        self.assertEqual(self.client.texts()[0], "Creating new session...")
        self.assertIn("Session ID: ses_1", self.client.texts()[1])
        self.assertEqual(self.state.registry.get_session(42), "ses_1")

    def test_sessions_lists_ten_most_recent(self):
        self.state.registry.get_or_create_session(42)
        self.send("/sessions")
        text = self.client.texts()[0]
        self.assertIn("1. ses_0000... - Chat 0", text)
        self.assertIn("10. ses_0009... - Chat 9", text)
        self.assertNotIn("Chat 10", text)
        self.assertTrue(text.endswith("Current: ses_1..."))

    def test_model_command_sets_by_name(self):
        self.send("/model haiku")
        self.assertEqual(str(self.state.registry.get_model(42)), "anthropic/claude-haiku-4")
        self.assertIn("ID: anthropic/claude-haiku-4", self.client.texts()[0])
        self.send("/model gpt-9")
        self.assertIn('Model "gpt-9" not found', self.client.texts()[1])
        self.send("/model")
        self.assertIn("anthropic/claude-haiku-4", self.client.texts()[2])

    def test_models_keyboard_and_selection_callback(self):
        self.send("/models")
        keyboard = self.client.messages[0]["reply_markup"]["inline_keyboard"]
        self.assertEqual(keyboard[0][0]["text"], "✓ OpenCode Zen minimax-m2.5-free")
        self.assertEqual(keyboard[1][0]["callback_data"], encode_model_callback("anthropic/claude-sonnet-4"))

        dispatch(self.state, self.config, self.client, callback_update(10, keyboard[1][0]["callback_data"]))
        self.assertEqual(str(self.state.registry.get_model(42)), "anthropic/claude-sonnet-4")
        self.assertEqual(self.client.callback_answers[-1], ("cb10", "Model set: Anthropic claude-sonnet-4", False))
        self.assertTrue(self.client.edits[-1]["text"].startswith("✅ Model Changed"))

    def test_stale_callback_reports_missing_model(self):
        dispatch(self.state, self.config, self.client, callback_update(11, "m:gone/model"))
        self.assertEqual(self.client.callback_answers[-1], ("cb11", "Model not found. Try /models again.", True))

    def test_callback_answers_when_models_cannot_load(self):
        self.backend.providers_error = BackendError({"message": "backend down"})
        dispatch(self.state, self.config, self.client, callback_update(13, "m:anthropic/claude-sonnet-4"))
        self.assertEqual(
            self.client.callback_answers,
            [("cb13", "Unable to load models. Please try again later.", True)],
        )
        self.assertEqual(self.client.edits, [])
        self.assertEqual(str(self.state.registry.get_model(42)), "opencode/minimax-m2.5-free")

    def test_models_pagination(self):
        many = [{"id": "p", "name": "P", "models": {f"m{index:03d}": {} for index in range(120)}}]
        self.backend.providers = many
        self.send("/models")
        keyboard = self.client.messages[0]["reply_markup"]["inline_keyboard"]
        self.assertEqual(len(keyboard), 51)
        self.assertEqual(keyboard[-1], [{"text": "➡️ Next", "callback_data": "page:1"}])

        dispatch(self.state, self.config, self.client, callback_update(12, "page:1"))
        edit = self.client.edits[-1]
        self.assertIn("showing 51-100", edit["text"])
        nav = edit["reply_markup"]["inline_keyboard"][-1]
        self.assertEqual([button["callback_data"] for button in nav], ["page:0", "page:2"])


class MediaFlowTests(unittest.TestCase):
    def test_voice_transcript_is_echoed_and_prompted(self):
        client = FakeTelegramClient(file_meta={"file_path": "voice/a.oga", "file_size": 4})
        backend = FakeBackend(response={"parts": [{"type": "text", "text": "lights on"}]})
        config = make_config(voice_transcribe_cmd=[sys.executable, "-c", "print('turn on the lights')", "{file}"])
        update = message_update(1, voice={"file_id": "v1", "duration": 2})

        dispatch(make_state(backend), config, client, update)

        self.assertEqual(client.texts()[0], "🎤 Voice Transcription:\nturn on the lights")
        self.assertEqual(client.texts()[1], '🎤 Voice: "turn on the lights"\n\n⏳ Processing...')
        self.assertEqual(client.texts()[-1], "lights on")
        self.assertEqual(backend.prompts[0]["parts"], [{"type": "text", "text": "turn on the lights"}])

    def test_empty_voice_transcript_is_reported(self):
        client = FakeTelegramClient(file_meta={"file_path": "voice/a.oga", "file_size": 4})
        backend = FakeBackend()
        config = make_config(voice_transcribe_cmd=[sys.executable, "-c", "pass", "{file}"])
        dispatch(make_state(backend), config, client, message_update(1, voice={"file_id": "v1"}))
        self.assertEqual(client.texts(), [config.voice_transcribe_empty_message])
        self.assertEqual(backend.prompts, [])

    def test_photo_is_sent_as_file_part(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeTelegramClient(file_meta={"file_path": "photos/p.jpg", "file_size": 4})
            backend = FakeBackend(response={"parts": [{"type": "text", "text": "a cat"}]})
            config = make_config(upload_dir=tmpdir)
            update = message_update(
                1,
                caption="what animal is this?",
                photo=[{"file_id": "small", "file_size": 1}, {"file_id": "big", "file_size": 4}],
            )

            dispatch(make_state(backend), config, client, update)

            parts = backend.prompts[0]["parts"]
            self.assertEqual(parts[0], {"type": "text", "text": "what animal is this?"})
            self.assertEqual(parts[1]["mime"], "image/jpeg")
            self.assertEqual(client.texts()[0], "📸 Photo Analysis\n💬 what animal is this?\n\n⏳ Processing...")
            self.assertEqual(client.texts()[-1], "a cat")

    def test_video_status_steps_and_cleanup(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeTelegramClient(file_meta={"file_path": "videos/v.mp4", "file_size": 4})
            backend = FakeBackend(response={"parts": [{"type": "text", "text": "a dog runs"}]})
            config = make_config(ffmpeg_cmd=write_fake_ffmpeg(tmpdir, frames=6))
            update = message_update(1, video={"file_id": "vid", "duration": 12, "file_size": 2 * 1024 * 1024})

            dispatch(make_state(backend), config, client, update)

            status_text = client.texts()[0]
            self.assertTrue(status_text.startswith("🎬 Processing video...\n⏱️ Duration: 12s\n📦 Size: 2.00 MB"))
            self.assertTrue(status_text.endswith("⏳ Step 1/3: Downloading..."))
            edits = [edit["text"] for edit in client.edits]
            self.assertTrue(edits[0].endswith("⏳ Step 2/3: Starting conversion..."))
            self.assertIn("✅ Step 2/3: Conversion done!", edits[-2])
            self.assertIn("📊 Extracted 5 frames", edits[-1])

            parts = backend.prompts[0]["parts"]
            self.assertEqual(len(parts), 6)
            frame_paths = [Path(part["url"][len("file://"):]) for part in parts[1:]]
            self.assertFalse(any(path.exists() for path in frame_paths))
            self.assertEqual(client.texts()[-1], "a dog runs")
            self.assertEqual(len(client.deleted), 2)

    def test_video_backend_error_still_removes_scratch_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeTelegramClient(file_meta={"file_path": "videos/v.mp4", "file_size": 4})
            backend = FakeBackend()
            backend.prompt_error = BackendError({"message": "vision unsupported"})
            config = make_config(ffmpeg_cmd=write_fake_ffmpeg(tmpdir, frames=6))
            update = message_update(1, video={"file_id": "vid", "duration": 12, "file_size": 4})

            with mock.patch.object(tempfile, "tempdir", tmpdir):
                dispatch(make_state(backend), config, client, update)

            frame_paths = [Path(part["url"][len("file://"):]) for part in backend.prompts[0]["parts"][1:]]
            self.assertEqual(len(frame_paths), 5)
            self.assertTrue(all(path.parent.parent == Path(tmpdir) for path in frame_paths))
            self.assertFalse(any(path.exists() for path in frame_paths))
            self.assertFalse(frame_paths[0].parent.exists())
            # Only the ffmpeg stand-in is left: downloaded video and frames directory are gone.
            self.assertEqual(os.listdir(tmpdir), ["fake_ffmpeg.py"])

            status_id = client.messages[0]["message_id"]
            progress_id = client.messages[1]["message_id"]
            self.assertEqual(sorted(client.deleted), [(42, status_id), (42, progress_id)])
            self.assertEqual(
                client.texts()[-1],
                '❌ Error processing video: OpenCode API error: {"message": "vision unsupported"}',
            )

    def test_video_failure_reports_and_removes_status(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeTelegramClient(file_meta={"file_path": "videos/v.mp4", "file_size": 4})
            backend = FakeBackend()
            config = make_config(ffmpeg_cmd=write_fake_ffmpeg(tmpdir, frames=0, stderr="bad codec", code=1))
            update = message_update(1, video={"file_id": "vid", "duration": 4, "file_size": 4})

            dispatch(make_state(backend), config, client, update)

            self.assertEqual(backend.prompts, [])
            self.assertEqual(client.deleted, [(42, client.messages[0]["message_id"])])
            self.assertEqual(client.texts()[-1], "❌ Error processing video: ffmpeg failed with code 1: bad codec")


class ShutdownTests(unittest.TestCase):
    def setUp(self):
        for signum in (signal.SIGINT, signal.SIGTERM):
            self.addCleanup(signal.signal, signum, signal.getsignal(signum))

    def test_signal_interrupts_blocking_poll_once(self):
        stop_event = threading.Event()
        install_signal_handlers(stop_event)
        handler = signal.getsignal(signal.SIGTERM)

        with self.assertRaises(KeyboardInterrupt):
            handler(signal.SIGTERM, None)
        self.assertTrue(stop_event.is_set())
        handler(signal.SIGTERM, None)

    def test_run_bridge_stops_when_poll_is_interrupted(self):
        class InterruptedClient(FakeTelegramClient):
            def get_updates(self, offset, timeout_seconds=None):
                super().get_updates(offset, timeout_seconds)
                raise KeyboardInterrupt

        stop_event = threading.Event()
        client = InterruptedClient()

        exit_code = run_bridge(
            make_config(),
            stop_event=stop_event,
            enable_sync=False,
            client=client,
            backend=FakeBackend(),
        )

        self.assertEqual(exit_code, 0)
        self.assertTrue(stop_event.is_set())
        self.assertEqual(len(client.get_updates_calls), 1)


class SelfTestTests(unittest.TestCase):
    def test_self_test_passes(self):
        self.assertEqual(run_self_test(), 0)


class WorkerIsolationTests(unittest.TestCase):
    def test_chats_are_processed_concurrently(self):
        release = threading.Event()

        class BlockingBackend(FakeBackend):
            def prompt(self, session_id, parts, model):
                if parts[0]["text"] == "slow":
                    release.wait(5)
                return super().prompt(session_id, parts, model)

        client = FakeTelegramClient()
        backend = BlockingBackend()
        state = make_state(backend, allowed={1, 2})
        config = make_config()
        slow = handlers.handle_update(state, config, client, message_update(1, "slow", user_id=1, chat_id=1))
        fast = handlers.handle_update(state, config, client, message_update(2, "fast", user_id=2, chat_id=2))
        fast.join(timeout=5)
        self.assertFalse(fast.is_alive())
        self.assertTrue(slow.is_alive())
        release.set()
        slow.join(timeout=5)
        self.assertEqual(len(backend.prompts), 2)


if __name__ == "__main__":
    unittest.main()

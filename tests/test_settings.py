import os
import tempfile
import unittest
from pathlib import Path


class TestSettings(unittest.TestCase):
    def setUp(self) -> None:
        self._old_home = os.environ.get("TURNRELAY_HOME")
        self._td = tempfile.TemporaryDirectory()
        os.environ["TURNRELAY_HOME"] = self._td.name

    def tearDown(self) -> None:
        if self._old_home is None:
            os.environ.pop("TURNRELAY_HOME", None)
        else:
            os.environ["TURNRELAY_HOME"] = self._old_home
        self._td.cleanup()

    def _write(self, text: str) -> None:
        (Path(self._td.name) / "settings.yaml").write_text(text, encoding="utf-8")

    def test_defaults_without_file(self) -> None:
        from turnrelay.kernel.settings import detector_config, get_settings

        s = get_settings()
        self.assertEqual(s.detector.quiet_interval_s, 0.5)
        self.assertEqual(s.detector.confirm_interval_s, 1.5)
        self.assertEqual(s.detector.max_turn_bytes, 4 * 1024 * 1024)
        self.assertTrue(s.detector.require_input)
        self.assertEqual(s.registry.ring_depth, 32)
        self.assertEqual(s.registry.max_closed_sessions, 16)
        self.assertEqual(s.sinks.clipboard_commands[0], ["wl-copy"])
        self.assertEqual(s.wrap.detect, "local")
        self.assertEqual(s.log_level, "INFO")
        self.assertFalse(detector_config(s, require_input=False).require_input)

    def test_values_are_coerced_and_clamped(self) -> None:
        from turnrelay.kernel.settings import get_settings

        self._write(
            """
detector:
  quiet_interval_s: "0.25"
  confirm_interval_s: 2
  max_turn_bytes: -5
  require_input: "no"
registry:
  ring_depth: "lots"
  max_closed_sessions: 3
sinks:
  clipboard_commands: ["xclip -selection clipboard", [], 7]
  delivery_timeout_s: 9999
wrap:
  detect: Broker
  bracketed_paste: off
log:
  level: debug
"""
        )
        s = get_settings()
        self.assertEqual(s.detector.quiet_interval_s, 0.25)
        self.assertEqual(s.detector.confirm_interval_s, 2.0)
        self.assertEqual(s.detector.max_turn_bytes, 1)
        self.assertFalse(s.detector.require_input)
        self.assertEqual(s.registry.ring_depth, 32)
        self.assertEqual(s.registry.max_closed_sessions, 3)
        self.assertEqual(s.sinks.clipboard_commands, [["xclip", "-selection", "clipboard"]])
        self.assertEqual(s.sinks.delivery_timeout_s, 120.0)
        self.assertEqual(s.wrap.detect, "broker")
        self.assertFalse(s.wrap.bracketed_paste)
        self.assertEqual(s.log_level, "DEBUG")

    def test_inconsistent_timing_raises(self) -> None:
        from turnrelay.errors import ConfigError
        from turnrelay.kernel.settings import get_settings

        self._write("detector: {quiet_interval_s: 2.0, confirm_interval_s: 1.0}\n")
        with self.assertRaises(ConfigError):
            get_settings()

    def test_unreadable_yaml_falls_back_to_defaults(self) -> None:
        from turnrelay.kernel.settings import get_settings, load_settings

        self._write("detector: [unclosed\n")
        self.assertEqual(load_settings(), {})
        self.assertEqual(get_settings().registry.ring_depth, 32)

    def test_save_roundtrip(self) -> None:
        from turnrelay.kernel.settings import RelaySettings, get_settings, load_settings, save_settings

        s = RelaySettings()
        s.registry.ring_depth = 5
        save_settings(s.to_dict())
        self.assertEqual(load_settings()["registry"]["ring_depth"], 5)
        self.assertEqual(get_settings().registry.ring_depth, 5)


if __name__ == "__main__":
    unittest.main()

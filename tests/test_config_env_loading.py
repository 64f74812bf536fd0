from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

import config


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_with_env_file(self, lines: list[str], expr: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            return subprocess.run(
                [sys.executable, "-c", f"import config; print({expr})"],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = "data/__definitely_missing_env_for_test__.env"
        result = subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        result = self._run_with_env_file(
            ["UNITTEST_BOT_ENV_FLAG=loaded"],
            "__import__('os').getenv('UNITTEST_BOT_ENV_FLAG', '')",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_risk_limits_are_loaded_from_env(self) -> None:
        result = self._run_with_env_file(
            ["DAILY_LIMIT=2.5", "MAX_BUY_AMOUNT=0.05", "MAX_POSITIONS=3", "STOP_LOSS_PERCENT=15"],
            "f'{config.DAILY_LIMIT}|{config.MAX_BUY_AMOUNT}|{config.MAX_POSITIONS}|{config.STOP_LOSS_PERCENT}'",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "2500000000000000000|50000000000000000|3|15.0")


class ConfigParserTests(unittest.TestCase):
    def test_take_profit_levels_pairs_are_sorted(self) -> None:
        levels = config._parse_take_profit_levels("100:50, 50:25 ,200:100")
        self.assertEqual(levels, [(50.0, 25.0), (100.0, 50.0), (200.0, 100.0)])

    def test_take_profit_bare_percents_close_on_last_level(self) -> None:
        levels = config._parse_take_profit_levels("50,100")
        self.assertEqual(levels, [(50.0, 25.0), (100.0, 100.0)])

    def test_take_profit_invalid_chunks_are_skipped(self) -> None:
        levels = config._parse_take_profit_levels("abc,-5:10,30:150")
        self.assertEqual(levels, [(30.0, 100.0)])

    def test_base_amount_parsing(self) -> None:
        self.assertEqual(config._parse_base_amount("0.1", "1"), 10**17)
        self.assertEqual(config._parse_base_amount("not-a-number", "1"), 10**18)
        self.assertEqual(config._parse_base_amount("-3", "1"), 0)

    def test_csv_parsing_drops_blanks(self) -> None:
        self.assertEqual(config._parse_csv(" a, ,b ,"), ["a", "b"])


if __name__ == "__main__":
    unittest.main()

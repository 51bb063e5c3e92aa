from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from x_ingest.linking import parse_linking_data
from x_ingest.proof import verify_linking_proof

_SECRET = "cli-test-secret-0123456789abcdef0123"


def _run_cli(args: list[str], *, env_overrides: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    repo_root = Path(__file__).resolve().parents[1]

    env = dict(os.environ)
    env.pop("X_LINKING_SECRET", None)
    env.pop("TWITTER_API_IO_KEY", None)
    env.update(env_overrides or {})

    existing_pp = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)

    return subprocess.run(
        [sys.executable, "-m", "x_ingest", *args],
        cwd=repo_root,
        env=env,
        capture_output=True,
        text=True,
    )


class TestLinkCommand(unittest.TestCase):
    def test_link_writes_verifiable_section(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            readme = Path(td) / "README.md"
            readme.write_text("# Alice\n\nHello there.\n", encoding="utf-8")

            proc = _run_cli(
                [
                    "link",
                    "--config",
                    str(cfg_path),
                    "--readme",
                    str(readme),
                    "--github-user",
                    "alice",
                    "--x-user-id",
                    "123",
                    "--x-username",
                    "@alice_x",
                ],
                env_overrides={"X_LINKING_SECRET": _SECRET},
            )

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("x_username=alice_x", proc.stdout)

            text = readme.read_text(encoding="utf-8")
            self.assertTrue(text.startswith("# Alice\n\nHello there.\n"))

            data = parse_linking_data(text)
            assert data is not None
            self.assertEqual(data.x_account.x_user_id, "123")
            self.assertTrue(
                verify_linking_proof(
                    "alice", "123", "alice_x", data.x_account.linking_proof, _SECRET
                )
            )

    def test_link_without_secret_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            proc = _run_cli(
                [
                    "link",
                    "--config",
                    str(cfg_path),
                    "--readme",
                    str(Path(td) / "README.md"),
                    "--github-user",
                    "alice",
                    "--x-user-id",
                    "123",
                    "--x-username",
                    "alice_x",
                ]
            )

            self.assertEqual(proc.returncode, 2, msg=proc.stderr)
            self.assertIn("X_LINKING_SECRET", proc.stderr)


class TestIngestCommandWritesLog(unittest.TestCase):
    def test_ingest_creates_log_on_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log_path = Path(td) / "out" / "ingest.log"

            proc = _run_cli(
                [
                    "ingest",
                    "--config",
                    str(Path(td) / "missing_config.yaml"),
                    "--db",
                    str(Path(td) / "out" / "state.sqlite"),
                ]
            )

            self.assertEqual(proc.returncode, 2, msg=proc.stderr)
            self.assertTrue(log_path.exists())

            events: list[str] = []
            for ln in log_path.read_text(encoding="utf-8").splitlines():
                if not ln.strip():
                    continue
                ev = json.loads(ln).get("event")
                if isinstance(ev, str):
                    events.append(ev)

            self.assertIn("ingest_command_started", events)
            self.assertIn("ingest_command_failed", events)


class TestScoreCommand(unittest.TestCase):
    def test_score_prints_json_for_stored_activities(self) -> None:
        from x_ingest.activity import ActivityRecord
        from x_ingest.storage import SQLiteStore

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            db_path = Path(td) / "state.sqlite"

            with SQLiteStore.open(db_path) as store:
                store.upsert_owner("alice")
                for n, kind in enumerate(["post", "quote", "reply"]):
                    store.upsert_activity(
                        ActivityRecord(
                            id=f"p{n}",
                            owner_identity="alice",
                            activity_type=kind,  # type: ignore[arg-type]
                            content="",
                            created_at=f"2024-05-01T1{n}:00:00+00:00",
                        )
                    )

            proc = _run_cli(
                [
                    "score",
                    "--config",
                    str(cfg_path),
                    "--db",
                    str(db_path),
                    "--user",
                    "alice",
                    "--start",
                    "2024-05-01",
                    "--end",
                    "2024-05-01",
                ]
            )

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["user"], "alice")
            self.assertEqual(payload["activities"], 3)
            self.assertEqual(payload["total_score"], 11.0)
            self.assertEqual(payload["counts"]["total"], 3)
            self.assertEqual(payload["daily_scores"], {"2024-05-01": 11.0})


if __name__ == "__main__":
    unittest.main()

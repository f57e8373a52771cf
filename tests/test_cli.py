from __future__ import annotations

from pathlib import Path

from vmix_data_server.__main__ import build_parser, config_from_args


def test_flags_override_config(tmp_path: Path) -> None:
    args = build_parser().parse_args(
        ["--port", "9001", "--host", "0.0.0.0", "--data-dir", str(tmp_path), "--desktop"]
    )
    cfg = config_from_args(args)
    assert cfg.PORT == 9001
    assert cfg.HOST == "0.0.0.0"
    assert cfg.DATA_DIR == str(tmp_path)
    assert cfg.DESKTOP_ENABLED is True
    assert args.command is None


def test_watch_subcommand() -> None:
    args = build_parser().parse_args(["watch", "demo", "--url", "http://10.0.0.2:8088", "--api-key", "k"])
    assert (args.command, args.profile, args.url, args.api_key) == ("watch", "demo", "http://10.0.0.2:8088", "k")

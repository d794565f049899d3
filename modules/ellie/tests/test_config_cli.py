import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

import config_cli


def test_parse_literal_scalars():
    assert config_cli.parse_literal("true") is True
    assert config_cli.parse_literal("False") is False
    assert config_cli.parse_literal("null") is None
    assert config_cli.parse_literal("42") == 42
    assert config_cli.parse_literal("0.75") == 0.75
    assert config_cli.parse_literal("haiku") == "haiku"


def test_parse_literal_json():
    assert config_cli.parse_literal('{"a": 1}') == {"a": 1}
    assert config_cli.parse_literal("[1, 2]") == [1, 2]
    assert config_cli.parse_literal("{broken") == "{broken"


def test_set_creates_intermediate_objects():
    data = {}
    config_cli._set(data, "tuner.bounds.maxResults", 8)
    assert data == {"tuner": {"bounds": {"maxResults": 8}}}


def test_set_rejects_non_object_intermediate():
    data = {"dedup": 5}
    with pytest.raises(ValueError, match="not an object"):
        config_cli._set(data, "dedup.similarityThreshold", 0.9)


def test_get_missing_returns_default():
    assert config_cli._get({"a": {"b": 1}}, "a.b") == 1
    assert config_cli._get({"a": {"b": 1}}, "a.c", "x") == "x"


def test_path_command(ellie_home, capsys):
    assert config_cli.main(["path"]) == 0
    assert capsys.readouterr().out.strip() == str(ellie_home / "config" / "ellie.json")


def test_set_then_get_roundtrip(ellie_home, capsys):
    assert config_cli.main(["set", "injection.threshold", "0.7"]) == 0
    saved = json.loads((ellie_home / "config" / "ellie.json").read_text(encoding="utf-8"))
    assert saved == {"injection": {"threshold": 0.7}}
    capsys.readouterr()

    assert config_cli.main(["get", "injection.threshold"]) == 0
    assert capsys.readouterr().out.strip() == "0.7"


def test_get_unknown_key(capsys):
    assert config_cli.main(["get", "injection.nope"]) == 1
    assert "Unknown key" in capsys.readouterr().out


def test_set_preserves_other_keys(ellie_home):
    path = ellie_home / "config" / "ellie.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"dedup": {"similarityThreshold": 0.9}}), encoding="utf-8")
    assert config_cli.main(["set", "dedup.pairLimit", "50"]) == 0
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved == {"dedup": {"similarityThreshold": 0.9, "pairLimit": 50}}


def test_show_is_default(capsys):
    assert config_cli.main([]) == 0
    out = capsys.readouterr().out
    assert "Ellie Configuration" in out
    assert "dedup threshold:   0.88" in out

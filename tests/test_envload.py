import os

import pytest

from caelis.envload import load_file, load_nearest

KEYS = ["CAELIS_T_ALPHA", "CAELIS_T_BETA", "CAELIS_T_GAMMA", "CAELIS_T_DELTA"]


@pytest.fixture
def clean_env(monkeypatch):
    for key in KEYS:
        monkeypatch.setenv(key, "x")
        monkeypatch.delenv(key)
    return monkeypatch


def test_load_file_parses_lines(tmp_path, clean_env):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\n"
        "\n"
        "export CAELIS_T_ALPHA = one\n"
        "CAELIS_T_BETA=\"two words\"\n"
        "CAELIS_T_GAMMA='a=b'\n"
        "not a pair\n"
        "=orphan\n",
        encoding="utf-8",
    )
    assert load_nearest(tmp_path) == env_file
    assert os.environ["CAELIS_T_ALPHA"] == "one"
    assert os.environ["CAELIS_T_BETA"] == "two words"
    assert os.environ["CAELIS_T_GAMMA"] == "a=b"
    assert "CAELIS_T_DELTA" not in os.environ


def test_load_file_does_not_override(tmp_path, clean_env):
    clean_env.setenv("CAELIS_T_ALPHA", "kept")
    env_file = tmp_path / ".env"
    env_file.write_text("CAELIS_T_ALPHA=replaced\n", encoding="utf-8")
    assert load_nearest(tmp_path) == env_file
    assert os.environ["CAELIS_T_ALPHA"] == "kept"


def test_load_file_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_file(tmp_path / "absent.env")


def test_load_nearest_walks_up(tmp_path, clean_env):
    env_file = tmp_path / ".env"
    env_file.write_text("CAELIS_T_DELTA=found\n", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    found = load_nearest(nested)
    assert found == env_file
    assert os.environ["CAELIS_T_DELTA"] == "found"


def test_load_nearest_prefers_closest(tmp_path, clean_env):
    (tmp_path / ".env").write_text("CAELIS_T_BETA=outer\n", encoding="utf-8")
    inner = tmp_path / "inner"
    inner.mkdir()
    (inner / ".env").write_text("CAELIS_T_BETA=inner\n", encoding="utf-8")
    assert load_nearest(inner) == inner / ".env"
    assert os.environ["CAELIS_T_BETA"] == "inner"


def test_load_nearest_uses_cwd(tmp_path, clean_env):
    (tmp_path / ".env").write_text("CAELIS_T_GAMMA=cwd\n", encoding="utf-8")
    clean_env.chdir(tmp_path)
    assert load_nearest() == tmp_path / ".env"
    assert os.environ["CAELIS_T_GAMMA"] == "cwd"
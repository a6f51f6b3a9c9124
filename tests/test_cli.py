import glob
import logging
import os

import pytest
import yaml

from chrootbuild import cli
from chrootbuild.modules import config, dispatcher, sandbox
from chrootbuild.modules import logging as log_mod
from chrootbuild.modules.plan import Plan, write_plan
from chrootbuild.modules.sandbox import EnsureTool


@pytest.fixture
def project(tmp_path, monkeypatch):
    root = tmp_path / "hello"
    root.mkdir()
    (root / "chroot-build.yaml").write_text(yaml.safe_dump([
        {"pkg_name": "hello"},
        {"pkg_version": "1.0"},
        {"pkg_description": "Hello world"},
        {"pkg_directories": "usr"},
        {"pkg_platform": "ubuntu 14"},
        {"build_script": "make install\n"},
    ]))

    def fake_git(args, cwd):
        if args[0] == "rev-parse":
            return str(root) + "\n"
        return ""

    monkeypatch.setattr(dispatcher, "_git", fake_git)
    return root


def test_build_requires_an_execution_mode(project):
    with pytest.raises(SystemExit) as exc:
        cli.main(["build", str(project / "chroot-build.yaml")])
    assert exc.value.code == 2


def test_local_and_server_are_exclusive(project):
    with pytest.raises(SystemExit):
        cli.main(["build", str(project / "chroot-build.yaml"), "--local", "--server", "builder"])


def test_platforms_listing(capsys):
    assert cli.main(["platforms"]) == 0
    out = capsys.readouterr().out
    assert "centos7" in out and "ubuntu16" in out


def test_missing_descriptor_reports_error(tmp_path, capsys):
    assert cli.main(["build", str(tmp_path / "absent.yaml"), "--local"]) == 1
    assert "cannot read descriptor" in capsys.readouterr().out


def test_preview_writes_plan_only(project, commands):
    rc = cli.main(["build", str(project / "chroot-build.yaml"), "--local", "--preview"])
    assert rc == 0
    assert commands.calls == []
    assert len(glob.glob(str(project / "generated-chroot-build-*.yaml"))) == 1
    assert not os.path.exists(project / "build")


def test_unsupported_platform_filter(project, capsys):
    rc = cli.main(["build", str(project / "chroot-build.yaml"), "--local", "--platform", "debian9"])
    assert rc == 1
    assert "Platform debian9 not supported" in capsys.readouterr().out


def test_run_plan(tmp_path, monkeypatch):
    path = write_plan(Plan(project="hello", preflight=[EnsureTool(tool="fpm")]), str(tmp_path), pid=7)
    monkeypatch.setattr(sandbox.shutil, "which", lambda tool: None)
    assert cli.main(["run-plan", str(path)]) == 1
    monkeypatch.setattr(sandbox.shutil, "which", lambda tool: "/usr/bin/fpm")
    assert cli.main(["run-plan", str(path)]) == 0


def test_show_config(capsys, isolated_config):
    assert cli.main(["--config", str(isolated_config), "config"]) == 0
    out = capsys.readouterr().out
    assert "config file:" in out
    assert "build_dir_name" in out


def test_broken_cwd_config_does_not_break_startup(tmp_path, monkeypatch, capsys, isolated_config):
    monkeypatch.delenv(config.ENV_VAR)
    (tmp_path / "chroot-build.yaml").write_text("bogus: 1\n")
    config.reset()

    # a fresh logger manager must come up without reading any config file
    monkeypatch.setattr(log_mod.BuildLogger, "_instance", None)
    fresh = log_mod.BuildLogger()
    try:
        assert cli.main(["--config", str(isolated_config), "platforms"]) == 0
        assert cli.main(["platforms"]) == 1
        assert "invalid configuration" in capsys.readouterr().out
    finally:
        for h in list(fresh._handlers):
            logging.getLogger("chrootbuild").removeHandler(h)
            h.close()

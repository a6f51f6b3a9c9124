import logging

import yaml

from chrootbuild.modules import config
from chrootbuild.modules import logging as log_mod
from chrootbuild.modules.logging import ColorFormatter, ModuleLevelFilter, _ModuleNameFilter


def _record(name="chrootbuild", level=logging.INFO, **extra):
    return logging.makeLogRecord(dict(name=name, levelno=level, levelname=logging.getLevelName(level),
                                      msg="hello", **extra))


def test_module_name_from_logger_name():
    rec = _record(name="chrootbuild.config")
    assert _ModuleNameFilter().filter(rec)
    assert rec.cb_module == "config"


def test_module_name_kept_when_set():
    rec = _record(cb_module="build")
    _ModuleNameFilter().filter(rec)
    assert rec.cb_module == "build"


def test_module_level_filter():
    f = ModuleLevelFilter({"build": "warning"})
    assert not f.filter(_record(cb_module="build"))
    assert f.filter(_record(cb_module="build", level=logging.ERROR))
    assert f.filter(_record(cb_module="fetcher", level=logging.DEBUG))


def test_color_formatter():
    rec = _record(level=logging.WARNING)
    assert ColorFormatter("%(message)s", color=False).format(rec) == "hello"
    colored = ColorFormatter("%(message)s", color=True).format(rec)
    assert colored.startswith("\033[33m") and colored.endswith("\033[0m")


def test_build_output_goes_to_log_file(tmp_path, isolated_config):
    log_file = tmp_path / "logs" / "chroot-build.log"
    original = isolated_config.read_text()
    data = yaml.safe_load(original)
    data["logging"]["file"] = str(log_file)
    isolated_config.write_text(yaml.safe_dump(data))
    config.load(str(isolated_config))
    log_mod.reload_config()
    try:
        log_mod.stream_build_output("build", "make: Nothing to be done for 'all'.\n")
        for h in logging.getLogger("chrootbuild").handlers:
            h.flush()
        assert "[build] make: Nothing to be done for 'all'." in log_file.read_text()
    finally:
        isolated_config.write_text(original)
        config.load(str(isolated_config))
        log_mod.reload_config()

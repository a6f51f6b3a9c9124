import glob
import io
import os
import tarfile

import pytest
import yaml

from chrootbuild.modules import config
from chrootbuild.modules.dispatcher import BuildOptions, Dispatcher, PathLayout
from chrootbuild.modules.errors import BuildStepError, ConfigurationError, PreconditionError, StepError
from chrootbuild.modules.meta import DescriptorBuilder


class FakeGit:
    def __init__(self, root, subdir="", clean=True):
        self.root = root
        self.subdir = subdir
        self.clean = clean

    @property
    def project(self):
        return os.path.basename(self.root)

    def is_clean(self):
        return self.clean


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "hello"
    (root / ".git").mkdir(parents=True)
    (root / ".git" / "HEAD").write_text("ref: refs/heads/master\n")
    (root / "Makefile").write_text("install:\n\tcp hello /usr/bin/hello\n")
    (root / "hello").write_text("#!/bin/sh\necho hello\n")
    return root


@pytest.fixture
def descriptor(project):
    b = DescriptorBuilder(base_dir=str(project))
    b.pkg_name("hello")
    b.pkg_version("1.0")
    b.pkg_description("Hello world")
    b.pkg_directories("usr")
    b.pkg_platform("ubuntu", "14")
    b.build_deps("make")
    b.build_script("make install")
    b.pkg_platform("centos", "7")
    b.build_script("make install")
    return b.build()


def _plans(project):
    return sorted(glob.glob(str(project / "generated-chroot-build-*.yaml")))


def _dispatcher(descriptor, project, settings, clean=True, **opts):
    opts.setdefault("local", True)
    return Dispatcher(descriptor, BuildOptions(**opts), settings=settings, git=FakeGit(str(project), clean=clean),
                      user="dev")


@pytest.mark.parametrize("opts", [{"local": False}, {"local": True, "server": "builder"}])
def test_exactly_one_execution_mode(descriptor, project, settings, commands, opts):
    with pytest.raises(ConfigurationError, match="exactly one"):
        _dispatcher(descriptor, project, settings, **opts).execute()
    assert _plans(project) == []
    assert commands.calls == []


def test_unsupported_platform_filter(descriptor, project, settings, commands):
    with pytest.raises(ConfigurationError, match="Platform fedora30 not supported"):
        _dispatcher(descriptor, project, settings, platforms=["fedora30"]).execute()
    with pytest.raises(ConfigurationError, match="not declared"):
        _dispatcher(descriptor, project, settings, platforms=["ubuntu16"]).execute()
    assert _plans(project) == []


def test_missing_build_script(project, settings, commands):
    b = DescriptorBuilder(base_dir=str(project))
    b.pkg_name("hello")
    b.pkg_version("1.0")
    b.pkg_description("Hello")
    b.pkg_directories("usr")
    b.pkg_platform("ubuntu", "14")
    with pytest.raises(ConfigurationError, match="build script not defined for platform ubuntu14"):
        _dispatcher(b.build(), project, settings).execute()


def test_uncommitted_changes_abort_before_any_work(descriptor, project, settings, commands):
    with pytest.raises(PreconditionError):
        _dispatcher(descriptor, project, settings, clean=False).execute()
    assert _plans(project) == []
    assert commands.calls == []


def test_ignore_uncommitted(descriptor, project, settings, commands):
    d = _dispatcher(descriptor, project, settings, clean=False, ignore_uncommitted=True, preview=True)
    d.execute()
    assert len(_plans(project)) == 1


def test_preview_generates_ordered_plan_and_runs_nothing(descriptor, project, settings, commands):
    d = _dispatcher(descriptor, project, settings, preview=True)
    assert d.execute() == []

    assert commands.calls == []
    assert _plans(project) == [d.plan_file]
    assert d.plan.platforms == ["ubuntu14", "centos7"]
    for unit in d.plan.units:
        assert unit.provision and unit.build and unit.package
    assert [s.op for s in d.plan.preflight] == ["ensure_tool"]

    lines = d.plan.summary()
    first_centos = next(i for i, l in enumerate(lines) if l.startswith("centos7/"))
    last_ubuntu = max(i for i, l in enumerate(lines) if l.startswith("ubuntu14/"))
    assert last_ubuntu < first_centos
    phases = [l.split(":")[0] for l in lines if l.startswith("ubuntu14/")]
    assert phases.index("ubuntu14/provision") < phases.index("ubuntu14/build") < phases.index("ubuntu14/package")


def test_requested_order_wins(descriptor, project, settings, commands):
    d = _dispatcher(descriptor, project, settings, preview=True, platforms=["centos7", "ubuntu14", "centos7"])
    d.execute()
    assert d.plan.platforms == ["centos7", "ubuntu14"]


# ----------------------------
# Full local runs with simulated tools
# ----------------------------
@pytest.fixture
def simulated_host(settings, commands, tools_present, cached_image):
    """Cached images for both platforms, a build script that installs usr/bin/hello, a fake fpm."""
    cached_image(settings.paths.cache_dir, "ubuntu14", {"usr/lib/libc.so.6": "libc", "etc/issue": "Ubuntu"})
    cached_image(settings.paths.cache_dir, "centos7", {"usr/lib64/libc.so.6": "libc", "etc/issue": "CentOS"})
    failing = set()
    inputs = {}

    def simulate(argv, root=None, cwd=None):
        if argv[0] == "/bin/bash":
            platform = os.path.basename(root)
            if platform in failing:
                return 2
            os.makedirs(os.path.join(root, "usr", "bin"), exist_ok=True)
            with open(os.path.join(root, "usr", "bin", "hello"), "w") as f:
                f.write("hello")
        elif argv[0] == "fpm":
            pkg_type = argv[argv.index("-t") + 1]
            name, version = argv[argv.index("-n") + 1], argv[argv.index("-v") + 1]
            with open(argv[argv.index("--inputs") + 1]) as f:
                inputs[pkg_type] = f.read().split()
            with open(os.path.join(cwd, f"{name}-{version}.{pkg_type}"), "w") as f:
                f.write(pkg_type)
        return None

    commands.handlers.append(simulate)
    return failing, inputs


def test_two_platform_success(descriptor, project, settings, commands, simulated_host):
    _, inputs = simulated_host
    results = _dispatcher(descriptor, project, settings).execute()

    build = project / "build"
    assert [r.platform for r in results] == ["ubuntu14", "centos7"]
    assert os.listdir(build / "ubuntu14") == ["hello-1.0.deb"]
    assert os.listdir(build / "centos7") == ["hello-1.0.rpm"]
    assert sorted(os.listdir(build)) == ["centos7", "ubuntu14"]
    assert results[0].artifact == str(build / "ubuntu14" / "hello-1.0.deb")
    assert results[0].manifest == ("/usr/bin/hello",)
    assert inputs == {"deb": ["usr/bin/hello"], "rpm": ["usr/bin/hello"]}
    assert _plans(project) == []
    assert "debootstrap" not in commands.programs()
    assert ["apt-get", "install", "-y", "make"] in commands.argvs()


def test_second_platform_build_failure(descriptor, project, settings, commands, simulated_host):
    failing, _ = simulated_host
    failing.add("centos7")
    with pytest.raises(BuildStepError) as exc:
        _dispatcher(descriptor, project, settings).execute()

    assert exc.value.platform == "centos7"
    assert exc.value.phase == "build"
    build = project / "build"
    artifacts = glob.glob(str(build / "*" / "hello-*.*"))
    assert artifacts == [str(build / "ubuntu14" / "hello-1.0.deb")]
    # centos7 environment is intact for debugging
    env = build / "centos7"
    assert (env / "etc" / "issue").read_text() == "CentOS"
    assert (env / "tmp" / "hello" / "Makefile").is_file()
    assert (build / "centos7.list").is_file()
    assert len(_plans(project)) == 1
    # the failing platform never reached the assembler
    assert commands.programs().count("fpm") == 1


# ----------------------------
# Remote mode
# ----------------------------
def test_remote_layout(settings):
    git = FakeGit("/home/dev/src/hello", subdir="pkg")
    layout = PathLayout.remote(git, settings.paths.base_dir, "dev")
    assert layout.project_root == os.path.join(settings.paths.base_dir, "dev", "hello")
    assert layout.build_dir == os.path.join(settings.paths.base_dir, "dev", "hello", "pkg", "build")
    assert layout.env_root("centos7") == os.path.join(layout.build_dir, "centos7")


def test_remote_run_streams_project_and_collects(descriptor, project, settings, commands):
    d = _dispatcher(descriptor, project, settings, local=False, server="builder.example.com", debug=True)
    d.execute()

    remote_root = os.path.join(settings.paths.base_dir, "dev", "hello")
    plan_name = os.path.basename(d.plan_file)
    ssh_call, scp_call = commands.calls
    assert ssh_call["argv"][:2] == ["ssh", "builder.example.com"]
    script = ssh_call["argv"][2]
    assert f"sudo rm -rf {remote_root}" in script
    assert "tar xzf -" in script
    assert script.endswith(f"sudo chroot-build run-plan ./{plan_name} --debug")
    with tarfile.open(fileobj=io.BytesIO(ssh_call["stdin"]), mode="r:gz") as tar:
        names = tar.getnames()
    assert "./Makefile" in names
    assert f"./{plan_name}" in names
    assert not any(".git" in n for n in names)

    assert scp_call["argv"] == ["scp", "-r", f"builder.example.com:{remote_root}/build", "."]
    assert scp_call["cwd"] == str(project)
    assert _plans(project) == []
    # plan paths point at the build server layout
    assert d.plan.units[0].provision[0].path == os.path.join(remote_root, "build", "ubuntu14")


def test_remote_failure_keeps_plan(descriptor, project, settings, commands):
    commands.handlers.append(lambda argv, root=None, cwd=None: 255 if argv[0] == "ssh" else None)
    with pytest.raises(StepError, match="remote run on builder failed"):
        _dispatcher(descriptor, project, settings, local=False, server="builder").execute()
    assert len(_plans(project)) == 1
    assert commands.programs() == ["ssh"]


def test_configured_build_dir_is_never_shipped(descriptor, project, isolated_config, commands):
    data = yaml.safe_load(isolated_config.read_text())
    data["paths"]["build_dir_name"] = "out"
    isolated_config.write_text(yaml.safe_dump(data))
    settings = config.load(str(isolated_config)).settings
    (project / "out" / "ubuntu14" / "usr").mkdir(parents=True)
    (project / "out" / "ubuntu14" / "usr" / "big").write_text("x")

    d = _dispatcher(descriptor, project, settings, local=False, server="builder")
    d.execute()

    with tarfile.open(fileobj=io.BytesIO(commands.calls[0]["stdin"]), mode="r:gz") as tar:
        names = tar.getnames()
    assert "./Makefile" in names
    assert not any(n == "./out" or n.startswith("./out/") for n in names)
    copy = next(s for s in d.plan.units[0].build if s.op == "copy_project")
    assert copy.excludes == [".git", "out"]
    assert commands.calls[1]["argv"][2].endswith("/hello/out")


def test_remote_results_name_the_package(descriptor, project, settings, commands):
    stale = project / "build" / "ubuntu14"
    stale.mkdir(parents=True)
    (stale / "aaa-notes.txt").write_text("left from an earlier run")
    (stale / "hello-1.0.deb").write_text("deb")

    results = _dispatcher(descriptor, project, settings, local=False, server="builder").execute()

    assert results[0].artifact == str(stale / "hello-1.0.deb")
    assert results[1].artifact is None

import os
from types import MappingProxyType

import pytest

from chrootbuild.modules import platforms
from chrootbuild.modules.errors import AssemblerError
from chrootbuild.modules.meta import BuildDescriptor, PlatformSpec
from chrootbuild.modules.pkgtool import Assemble, Assembler, RelocateArtifact, fpm_arguments
from chrootbuild.modules.plan import RunContext


@pytest.fixture
def descriptor():
    spec = PlatformSpec(
        family="centos", version="7",
        replaces=("hello-old",), conflicts=("hello-ng", "hello-x"),
        runtime_deps=("openssl", "zlib"),
        scripts=MappingProxyType({"after-install": "pkg/after-install.sh", "before-install": "pkg/before-install.sh"}),
        build_script="make install",
    )
    return BuildDescriptor(name="hello", version="1.0", description="Hello world program",
                           directories=("usr",), platforms=(spec,), base_dir="/src/hello")


def test_fpm_arguments(descriptor, settings):
    args = fpm_arguments(descriptor, descriptor.platform("centos7"), platforms.lookup("centos7"),
                         build_dir="/w/build", root="/w/build/centos7", inputs="/w/build/centos7.fpm.list",
                         settings=settings.package, script_base="/w")
    assert args == [
        "--before-install", "/w/pkg/before-install.sh",
        "--after-install", "/w/pkg/after-install.sh",
        "--description", "Hello world program",
        "--replaces", "hello-old",
        "--conflicts", "hello-ng",
        "--conflicts", "hello-x",
        "-d", "openssl",
        "-d", "zlib",
        "--epoch", "1",
        "--rpm-user", "root",
        "--rpm-group", "root",
        "--workdir", "/w/build",
        "-s", "dir",
        "-t", "rpm",
        "-v", "1.0",
        "-n", "hello",
        "-C", "/w/build/centos7",
        "--inputs", "/w/build/centos7.fpm.list",
    ]


def test_deb_type_flags(settings):
    spec = PlatformSpec(family="ubuntu", version="16", build_script="make")
    d = BuildDescriptor(name="hello", version="2", description="d", directories=("usr",), platforms=(spec,))
    args = fpm_arguments(d, spec, platforms.lookup("ubuntu16"), build_dir="/b", root="/b/ubuntu16",
                         inputs="/b/ubuntu16.fpm.list", settings=settings.package)
    assert args[args.index("-t") + 1] == "deb"
    assert "--deb-user" in args and "--deb-group" in args
    assert "-d" not in args


def test_assemble_and_relocate(descriptor, settings, tmp_path, commands):
    build_dir = tmp_path / "build"
    build_dir.mkdir()

    def fpm(argv, root=None, cwd=None):
        (tmp_path / "build" / "hello-1.0-1.x86_64.rpm").write_bytes(b"rpm")

    commands.handlers.append(fpm)
    steps = Assembler(settings.package).package_steps(descriptor, descriptor.platform("centos7"),
                                                      platforms.lookup("centos7"), str(build_dir),
                                                      str(build_dir / "centos7"))
    ctx = RunContext()
    for step in steps:
        step.run(ctx)

    call = commands.calls[0]
    assert call["argv"][0] == "fpm"
    assert call["cwd"] == str(build_dir)
    assert ctx.assembled["centos7"] == str(build_dir / "hello-1.0-1.x86_64.rpm")

    RelocateArtifact(platform="centos7", dest_dir=str(build_dir / "centos7")).run(ctx)
    assert ctx.artifacts["centos7"] == str(build_dir / "centos7" / "hello-1.0-1.x86_64.rpm")
    assert os.listdir(build_dir) == ["centos7"]


def test_assembler_failure(tmp_path, commands):
    commands.handlers.append(lambda argv, root=None, cwd=None: 1)
    step = Assemble(platform="ubuntu14", name="hello", package_type="deb", build_dir=str(tmp_path), argv=["fpm"])
    with pytest.raises(AssemblerError, match="exited with code 1"):
        step.run(RunContext())


def test_assembler_without_artifact(tmp_path, commands):
    (tmp_path / "other_1.0_amd64.deb").write_bytes(b"")
    step = Assemble(platform="ubuntu14", name="hello", package_type="deb", build_dir=str(tmp_path), argv=["fpm"])
    with pytest.raises(AssemblerError, match="no hello"):
        step.run(RunContext())

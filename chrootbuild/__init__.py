# chrootbuild/__init__.py
"""chroot-build: build deb/rpm packages in pristine chroot environments."""

__version__ = "1.0.0"

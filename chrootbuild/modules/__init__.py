# chrootbuild/modules/__init__.py

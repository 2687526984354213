"""Stage a writable home from an installed artifact and start the server."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from searchpkgs.errors import (
    ArtifactNotInstalled,
    HomeNotWritable,
    JavaHomeNotFound,
    LaunchError,
    OperationTimeout,
)
from searchpkgs.fsutil import Deadline, LinkMode, copy_entry, copy_tree
from searchpkgs.installer import METADATA_DIR, InstalledArtifact
from searchpkgs.logging_utils import log_event

logger = logging.getLogger(__name__)

JAVA_HOME_ENV = "JAVA_HOME"

PopenFactory = Callable[..., subprocess.Popen[bytes]]


@dataclass(frozen=True, slots=True)
class RuntimeHome:
    """A prepared working directory and the process it should run."""

    path: Path
    conf_dir: Path
    command: list[str]
    env: dict[str, str] = field(repr=False)
    java_home: Path | None = None


def _is_within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


class RuntimeLauncher:
    """Copy an installed tree into a per-run home and exec the server binary.

    Restaging an existing home mirrors the artifact: entries the artifact does not
    ship are removed from its directories, except in the configuration directory,
    where operator files are kept and only missing files are added.

    ``hardlink`` mode shares inodes with the read-only store for everything but
    the configuration directory, which is always copied. Making a linked file
    writable and editing it in place, or running as root, changes the store too.
    """

    def __init__(
        self,
        *,
        java_home: Path | None = None,
        link_mode: LinkMode = "copy",
        environ: Mapping[str, str] | None = None,
        timeout: float | None = None,
        popen: PopenFactory | None = None,
    ) -> None:
        self.java_home = java_home
        self.link_mode = link_mode
        self.environ = environ
        self.timeout = timeout
        self._popen = popen or subprocess.Popen

    def _environment(self) -> dict[str, str]:
        return dict(os.environ if self.environ is None else self.environ)

    def _check_home(self, artifact: InstalledArtifact, home_dir: Path) -> Path:
        home = home_dir.expanduser().resolve()
        store_tree = artifact.path.resolve()
        if _is_within(home, store_tree) or _is_within(store_tree, home):
            raise LaunchError(
                f"home directory {home} overlaps the installed artifact {store_tree}",
                package=artifact.name,
                version=artifact.version,
            )
        try:
            home.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(dir=home):
                pass
        except OSError as exc:
            raise HomeNotWritable(
                f"home directory {home} is not writable: {exc}",
                package=artifact.name,
                version=artifact.version,
            ) from exc
        return home

    def resolve_java_home(self, artifact: InstalledArtifact, env: Mapping[str, str]) -> Path | None:
        """Explicit setting, then ``JAVA_HOME``, then the distribution's bundled JDK."""
        launcher = artifact.launcher
        if not launcher.java:
            return None
        if self.java_home is not None:
            return self.java_home
        configured = env.get(JAVA_HOME_ENV, "").strip()
        if configured:
            return Path(configured)
        for candidate in launcher.bundled_jdk:
            bundled = artifact.path / candidate
            if bundled.is_dir():
                return bundled
        raise JavaHomeNotFound(
            f"set {JAVA_HOME_ENV} or pass a Java home; the distribution bundles no JDK",
            package=artifact.name,
            version=artifact.version,
        )

    def _stage_tree(self, artifact: InstalledArtifact, home: Path) -> int:
        config_dir = artifact.launcher.config_dir
        deadline = Deadline(self.timeout, package=artifact.name, version=artifact.version)
        copied = 0
        try:
            for entry in sorted(artifact.path.iterdir()):
                target = home / entry.name
                # configuration is always a private copy
                link_mode: LinkMode = "copy" if entry.name == config_dir else self.link_mode
                if entry.is_dir() and not entry.is_symlink():
                    # existing configuration belongs to the operator; only fill in missing files
                    keep_existing = entry.name == config_dir and target.is_dir()
                    copied += copy_tree(
                        entry,
                        target,
                        deadline=deadline,
                        link_mode=link_mode,
                        overwrite=not keep_existing,
                        prune=entry.name != config_dir,
                    )
                else:
                    deadline.check("copy")
                    copy_entry(entry, target, link_mode=link_mode)
                    copied += 1
        except OperationTimeout:
            raise
        except OSError as exc:
            raise HomeNotWritable(
                f"could not stage {artifact.path} into {home}: {exc}",
                package=artifact.name,
                version=artifact.version,
            ) from exc
        return copied

    def prepare_home(
        self,
        artifact: InstalledArtifact,
        home_dir: Path,
        conf_dir: Path | None = None,
        java_opts: Sequence[str] | None = None,
    ) -> RuntimeHome:
        """Materialize the working copy and compute the server environment."""
        if not (artifact.path / METADATA_DIR).is_dir():
            raise ArtifactNotInstalled(
                f"installed tree {artifact.path} does not exist",
                package=artifact.name,
                version=artifact.version,
            )
        home = self._check_home(artifact, home_dir)
        launcher = artifact.launcher
        env = self._environment()
        java_home = self.resolve_java_home(artifact, env)

        copied = self._stage_tree(artifact, home)

        conf = self._resolve_conf_dir(artifact, home, conf_dir, env)
        options = [env.get(launcher.java_opts_var, "").strip(), *(java_opts or [])]
        accumulated = " ".join(option.strip() for option in options if option and option.strip())

        for name in [launcher.home_var, *launcher.home_vars]:
            env[name] = str(home)
        for name in [launcher.conf_var, *launcher.conf_vars]:
            env[name] = str(conf)
        if accumulated:
            for name in [launcher.java_opts_var, *launcher.java_opts_vars]:
                env[name] = accumulated
        if java_home is not None:
            for name in [JAVA_HOME_ENV, *launcher.java_home_aliases]:
                env[name] = str(java_home)

        command = [str(home / launcher.binary), *launcher.args]
        log_event(
            logger,
            logging.INFO,
            "launcher.home_prepared",
            package=artifact.name,
            version=artifact.version,
            home=str(home),
            conf_dir=str(conf),
            entries_copied=copied,
            link_mode=self.link_mode,
        )
        return RuntimeHome(path=home, conf_dir=conf, command=command, env=env, java_home=java_home)

    def _resolve_conf_dir(
        self,
        artifact: InstalledArtifact,
        home: Path,
        conf_dir: Path | None,
        env: Mapping[str, str],
    ) -> Path:
        launcher = artifact.launcher
        if conf_dir is None:
            configured = env.get(launcher.conf_var, "").strip()
            if not configured:
                return home / launcher.config_dir
            conf_dir = Path(configured)
        resolved = conf_dir.expanduser().resolve()
        if not resolved.is_dir():
            raise LaunchError(
                f"configuration directory {resolved} does not exist",
                package=artifact.name,
                version=artifact.version,
            )
        return resolved

    def launch(
        self,
        artifact: InstalledArtifact,
        home_dir: Path,
        conf_dir: Path | None = None,
        java_opts: Sequence[str] | None = None,
    ) -> subprocess.Popen[bytes]:
        """Stage ``home_dir`` and start the server with it as working directory."""
        runtime = self.prepare_home(artifact, home_dir, conf_dir=conf_dir, java_opts=java_opts)
        try:
            process = self._popen(runtime.command, cwd=runtime.path, env=runtime.env)
        except OSError as exc:
            raise LaunchError(
                f"could not start {runtime.command[0]}: {exc}",
                package=artifact.name,
                version=artifact.version,
            ) from exc
        log_event(
            logger,
            logging.INFO,
            "launcher.started",
            package=artifact.name,
            version=artifact.version,
            pid=process.pid,
            home=str(runtime.path),
        )
        return process

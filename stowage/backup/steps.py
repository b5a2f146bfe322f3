"""
Backup steps and the runner that executes them.

A step captures one piece of live state into the working directory during
backup and puts it back during restore. Steps are built by identifier from
the BACKUP_STEPS configuration and always run one after another in
configuration order, since a later step may depend on what an earlier one
left behind.

Restore is two-phase: restore() stages changes, commit() applies them once
every step has restored successfully, discard() drops staged changes when
the restore is abandoned.

Built-in steps:
- files: Copy local files/directories
- ssh_files: Copy files/directories from a remote system via SSH/SFTP
"""

import os
import json
import stat
import shutil
import logging
from pathlib import Path
from typing import List, Dict, Any, Optional, Callable
from fnmatch import fnmatch
import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import OperationCancelledError, StepError

logger = logging.getLogger(__name__)


STEP_REGISTRY = {}

MANIFEST_NAME = 'manifest.json'
STAGING_SUFFIX = '.stowage-restore'
REPLACED_SUFFIX = '.stowage-replaced'


def register_step(identifier: str):
    """Class decorator adding a step class to STEP_REGISTRY under identifier."""
    def decorator(cls):
        cls.identifier = identifier
        STEP_REGISTRY[identifier] = cls
        return cls
    return decorator


class Step:
    """
    Base class for backup steps.

    Args:
        working_dir: Working directory of the current create/restore
        config: Step configuration from BACKUP_STEPS (or the backup's meta)
    """

    identifier = None

    def __init__(self, working_dir: str, config: Optional[Dict[str, Any]] = None):
        self.working_dir = working_dir
        self.config = config or {}

    def backup(self):
        """Capture live state into the working directory."""
        raise NotImplementedError

    def restore(self):
        """Stage working directory contents for applying to live state."""
        raise NotImplementedError

    def commit(self):
        """Apply changes staged by restore()."""

    def discard(self):
        """Drop changes staged by restore()."""

    @property
    def step_dir(self) -> Path:
        """Subdirectory of the working directory owned by this step."""
        return Path(self.working_dir) / self.identifier

    def _write_manifest(self, entries: List[Dict[str, Any]]):
        with open(self.step_dir / MANIFEST_NAME, 'w') as f:
            json.dump({'entries': entries}, f, indent=2)

    def _read_manifest(self) -> List[Dict[str, Any]]:
        manifest_path = self.step_dir / MANIFEST_NAME

        if not manifest_path.exists():
            raise FileNotFoundError(f"Step manifest missing from backup: {manifest_path}")

        with open(manifest_path, 'r') as f:
            return json.load(f)['entries']


def _matches_any(path: Path, exclude_patterns: List[str]) -> bool:
    """
    Check if a path matches any exclude pattern.

    Patterns match the full path or just the name; '**/' prefixes match
    names at any depth.
    """
    path_str = str(path)
    path_name = path.name

    for pattern in exclude_patterns:
        if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


def _remove_path(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _link_stays_inside(link: Path, root: Path) -> bool:
    """Whether a symlink under root points at a path under root."""
    target = os.readlink(link)
    if os.path.isabs(target):
        return False

    resolved = os.path.normpath(os.path.join(os.path.dirname(link), target))
    return os.path.commonpath([resolved, str(root)]) == str(root)


def _carry_over_excluded(live_dir: Path, staged_dir: Path, exclude_patterns: List[str]):
    """
    Copy live paths matched by exclude_patterns into a staged tree.

    Excluded paths were never captured, so swapping the staged tree in must
    leave them as they are.
    """
    for directory, dirnames, filenames in os.walk(live_dir):
        relative = Path(directory).relative_to(live_dir)

        for name in dirnames + filenames:
            live_path = Path(directory) / name
            if not _matches_any(live_path, exclude_patterns):
                continue

            staged_path = staged_dir / relative / name
            if staged_path.exists() or staged_path.is_symlink():
                continue

            staged_path.parent.mkdir(parents=True, exist_ok=True)
            if live_path.is_dir() and not live_path.is_symlink():
                shutil.copytree(live_path, staged_path, symlinks=True)
            else:
                shutil.copy2(live_path, staged_path, follow_symlinks=False)

        dirnames[:] = [d for d in dirnames if not _matches_any(Path(directory) / d, exclude_patterns)]


@register_step('files')
class FilesStep(Step):
    """
    Copies local files and directories.

    Symlinks inside a directory are kept as links when they point into the
    same directory. Links pointing elsewhere are recorded in the manifest
    and recreated on restore instead of being archived. On restore, live
    paths matching exclude_patterns are left in place.

    Config:
        paths: List of file/directory paths to back up
        exclude_patterns: Glob patterns to exclude (e.g., *.pyc, __pycache__)
    """

    def __init__(self, working_dir: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(working_dir, config)
        self.paths = self.config.get('paths', [])
        self.exclude_patterns = self.config.get('exclude_patterns', [])
        self._staged = []

    def _copy_directory(self, source_path: Path, dest_path: Path) -> List[Dict[str, str]]:
        """
        Copy a directory tree without excluded paths.

        Returns:
            Symlinks pointing outside source_path, as {'path', 'target'}
            dicts relative to source_path; these are not copied
        """
        external_links = []

        def ignore(directory, names):
            ignored = []
            for name in names:
                path = Path(directory) / name
                if _matches_any(path, self.exclude_patterns):
                    ignored.append(name)
                elif path.is_symlink() and not _link_stays_inside(path, source_path):
                    external_links.append({
                        'path': path.relative_to(source_path).as_posix(),
                        'target': os.readlink(path),
                    })
                    ignored.append(name)
            return ignored

        shutil.copytree(source_path, dest_path, symlinks=True, ignore=ignore)
        return external_links

    def backup(self):
        self.step_dir.mkdir(parents=True, exist_ok=True)
        entries = []

        for position, path in enumerate(self.paths):
            source_path = Path(path).expanduser().resolve()

            if not source_path.exists():
                raise FileNotFoundError(f"Path does not exist: {path}")

            if _matches_any(source_path, self.exclude_patterns):
                continue

            # Prefix with position so equal basenames don't collide
            entry_name = f"{position:02d}-{source_path.name}"
            dest_path = self.step_dir / entry_name
            entry = {'entry': entry_name, 'path': str(source_path)}

            if source_path.is_file():
                shutil.copy2(source_path, dest_path)
                entry['type'] = 'file'
            elif source_path.is_dir():
                links = self._copy_directory(source_path, dest_path)
                entry['type'] = 'dir'
                if links:
                    entry['links'] = links
            else:
                raise ValueError(f"Unsupported path type: {path}")

            entries.append(entry)

        self._write_manifest(entries)

    def _recreate_links(self, staged_path: Path, links: List[Dict[str, str]]):
        for link in links:
            relative = Path(link['path'])
            if relative.is_absolute() or '..' in relative.parts:
                raise ValueError(f"Unsafe link path in manifest: {link['path']}")

            link_path = staged_path / relative
            link_path.parent.mkdir(parents=True, exist_ok=True)
            _remove_path(link_path)
            os.symlink(link['target'], link_path)

    def restore(self):
        self._staged = []

        for entry in self._read_manifest():
            source_path = self.step_dir / entry['entry']
            target_path = Path(entry['path'])
            staged_path = Path(entry['path'] + STAGING_SUFFIX)

            if not source_path.exists():
                raise FileNotFoundError(f"Backup entry missing: {entry['entry']}")

            target_path.parent.mkdir(parents=True, exist_ok=True)
            _remove_path(staged_path)
            self._staged.append((staged_path, target_path))

            if entry['type'] == 'dir':
                shutil.copytree(source_path, staged_path, symlinks=True)
                self._recreate_links(staged_path, entry.get('links', []))

                if self.exclude_patterns and target_path.is_dir():
                    _carry_over_excluded(target_path, staged_path, self.exclude_patterns)
            else:
                shutil.copy2(source_path, staged_path)

    def commit(self):
        for staged_path, target_path in self._staged:
            replaced_path = Path(str(target_path) + REPLACED_SUFFIX)
            _remove_path(replaced_path)

            if target_path.exists() or target_path.is_symlink():
                os.replace(target_path, replaced_path)

            os.replace(staged_path, target_path)
            _remove_path(replaced_path)

        self._staged = []

    def discard(self):
        for staged_path, _ in self._staged:
            _remove_path(staged_path)
        self._staged = []


@register_step('ssh_files')
class SshFilesStep(Step):
    """
    Copies files and directories from a remote system via SSH/SFTP.

    Config:
        host: SSH hostname or IP
        port: SSH port (default 22)
        username: SSH username
        password: SSH password (optional if using key)
        private_key: Path to private key file (optional)
        paths: List of remote paths to back up
    """

    def __init__(self, working_dir: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(working_dir, config)
        self.host = self.config.get('host') or self.config.get('hostname')
        self.port = self.config.get('port', 22)
        self.username = self.config.get('username')
        self.password = self.config.get('password')
        self.private_key_path = self.config.get('private_key')
        self.paths = self.config.get('paths', [])

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            ConnectionError: If connection or authentication fails
        """
        self.ssh_client = SSHClient()
        self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        # Use password or private key
        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise ValueError("Either password or private_key must be provided")

        try:
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            raise ConnectionError(f"SSH authentication failed: {e}") from e
        except paramiko.SSHException as e:
            raise ConnectionError(f"SSH connection to {self.host} failed: {e}") from e

    def _close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.warning(f"Failed to close SFTP session to {self.host}: {e}")
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def _download_directory(self, remote_path: str, local_path: Path):
        local_path.mkdir(parents=True, exist_ok=True)

        for item in self.sftp_client.listdir_attr(remote_path):
            remote_item = f"{remote_path.rstrip('/')}/{item.filename}"
            local_item = local_path / item.filename

            if stat.S_ISDIR(item.st_mode):
                self._download_directory(remote_item, local_item)
            else:
                self.sftp_client.get(remote_item, str(local_item))

    def _ensure_remote_directory(self, remote_path: str):
        try:
            self.sftp_client.stat(remote_path)
        except FileNotFoundError:
            self.sftp_client.mkdir(remote_path)

    def _upload_directory(self, local_path: Path, remote_path: str):
        self._ensure_remote_directory(remote_path)

        for item in sorted(local_path.iterdir()):
            remote_item = f"{remote_path.rstrip('/')}/{item.name}"

            if item.is_dir():
                self._upload_directory(item, remote_item)
            else:
                self.sftp_client.put(str(item), remote_item)

    def backup(self):
        self.step_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._connect()
            entries = []

            for position, remote_path in enumerate(self.paths):
                basename = os.path.basename(remote_path.rstrip('/'))
                entry_name = f"{position:02d}-{basename}"
                local_path = self.step_dir / entry_name

                remote_stat = self.sftp_client.stat(remote_path)

                if stat.S_ISDIR(remote_stat.st_mode):
                    self._download_directory(remote_path, local_path)
                    entry_type = 'dir'
                else:
                    self.sftp_client.get(remote_path, str(local_path))
                    entry_type = 'file'

                entries.append({'entry': entry_name, 'path': remote_path, 'type': entry_type})

            self._write_manifest(entries)
        finally:
            # Always cleanup connections
            self._close()

    def restore(self):
        entries = self._read_manifest()

        try:
            self._connect()

            for entry in entries:
                local_path = self.step_dir / entry['entry']

                if not local_path.exists():
                    raise FileNotFoundError(f"Backup entry missing: {entry['entry']}")

                if entry['type'] == 'dir':
                    self._upload_directory(local_path, entry['path'])
                else:
                    self.sftp_client.put(str(local_path), entry['path'])
        finally:
            self._close()


class StepRunner:
    """
    Builds steps from configuration and runs them in order.

    Args:
        registry: Identifier -> Step class mapping (default: STEP_REGISTRY)
    """

    def __init__(self, registry: Optional[Dict[str, type]] = None):
        self.registry = registry if registry is not None else STEP_REGISTRY

    def instantiate(
        self,
        working_dir: str,
        step_configs: Dict[str, Any],
        subset: Optional[Dict[str, Any]] = None
    ) -> List[Step]:
        """
        Create step instances in configuration order.

        Args:
            working_dir: Working directory handed to every step
            step_configs: Ordered mapping of step identifier -> config
            subset: If given, only steps named here are built, each with the
                subset's config instead of the default one

        Returns:
            Ordered list of Step instances

        Raises:
            ValueError: If an identifier has no registered step
        """
        unknown = [identifier for identifier in step_configs if identifier not in self.registry]
        if unknown:
            raise ValueError(
                f"Unknown backup step(s): {unknown}. "
                f"Valid options: {list(self.registry.keys())}"
            )

        steps = []

        for identifier, step_config in step_configs.items():
            if subset is not None:
                if identifier not in subset:
                    continue
                step_config = subset[identifier]

            steps.append(self.registry[identifier](working_dir, step_config))

        return steps

    def run_backup(self, steps: List[Step], cancellation_check: Optional[Callable] = None):
        self._run(steps, 'backup', cancellation_check)

    def run_restore(self, steps: List[Step], cancellation_check: Optional[Callable] = None):
        self._run(steps, 'restore', cancellation_check)

    def commit(self, steps: List[Step]):
        self._run(steps, 'commit')

    def discard(self, steps: List[Step]):
        """Best-effort discard of staged restore changes; never raises."""
        for step in steps:
            try:
                step.discard()
            except Exception as e:
                logger.error(f"Failed to discard staged changes of step '{step.identifier}': {e}")

    def _run(self, steps: List[Step], action: str, cancellation_check: Optional[Callable] = None):
        """
        Run one action on each step, strictly sequentially.

        Raises:
            StepError: Wrapping the first exception raised by a step
        """
        for step in steps:
            if cancellation_check:
                cancellation_check()

            logger.info(f"Running step '{step.identifier}' ({action})")

            try:
                getattr(step, action)()
            except (StepError, OperationCancelledError):
                raise
            except Exception as e:
                raise StepError(step.identifier, action, e) from e

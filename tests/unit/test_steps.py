"""
Unit tests for backup steps and the step runner (stowage/backup/steps.py).
"""

import os
import json
from unittest.mock import MagicMock

import paramiko
import pytest

from stowage.backup.steps import FilesStep, SshFilesStep, StepRunner, STEP_REGISTRY
from stowage.backup.errors import StepError, StorageError, OperationCancelledError


class TestStepRegistry:

    def test_builtin_steps_registered(self):
        assert STEP_REGISTRY['files'] is FilesStep
        assert STEP_REGISTRY['ssh_files'] is SshFilesStep

    def test_step_dir_is_named_after_identifier(self, tmp_path):
        step = FilesStep(str(tmp_path), {})

        assert step.step_dir == tmp_path / 'files'


class TestFilesStep:
    """Test FilesStep backup and two-phase restore."""

    def test_backup_copies_paths_and_writes_manifest(self, live_data, tmp_path):
        work = tmp_path / 'work'
        step = FilesStep(str(work), {'paths': [str(live_data / 'config.ini'), str(live_data / 'uploads')]})

        step.backup()

        assert (work / 'files' / '00-config.ini').read_text() == '[app]\nmode = production\n'
        assert (work / 'files' / '01-uploads' / 'nested' / 'notes.txt').read_text() == 'remember the milk'

        manifest = json.loads((work / 'files' / 'manifest.json').read_text())
        assert [e['entry'] for e in manifest['entries']] == ['00-config.ini', '01-uploads']
        assert [e['type'] for e in manifest['entries']] == ['file', 'dir']

    def test_backup_exclude_patterns(self, live_data, tmp_path):
        work = tmp_path / 'work'
        step = FilesStep(str(work), {'paths': [str(live_data)], 'exclude_patterns': ['*.pyc']})

        step.backup()

        assert (work / 'files' / '00-live' / 'config.ini').exists()
        assert not (work / 'files' / '00-live' / 'cache.pyc').exists()

    def test_backup_same_basename_does_not_collide(self, tmp_path):
        (tmp_path / 'a').mkdir()
        (tmp_path / 'b').mkdir()
        (tmp_path / 'a' / 'settings.json').write_text('a')
        (tmp_path / 'b' / 'settings.json').write_text('b')
        work = tmp_path / 'work'

        FilesStep(str(work), {'paths': [
            str(tmp_path / 'a' / 'settings.json'),
            str(tmp_path / 'b' / 'settings.json'),
        ]}).backup()

        assert (work / 'files' / '00-settings.json').read_text() == 'a'
        assert (work / 'files' / '01-settings.json').read_text() == 'b'

    def test_backup_missing_path(self, tmp_path):
        step = FilesStep(str(tmp_path / 'work'), {'paths': [str(tmp_path / 'missing')]})

        with pytest.raises(FileNotFoundError, match="Path does not exist"):
            step.backup()

    def test_restore_and_commit_replace_live_state(self, live_data, tmp_path):
        work = tmp_path / 'work'
        FilesStep(str(work), {'paths': [str(live_data)], 'exclude_patterns': ['*.pyc']}).backup()

        # Live state drifts after the backup
        (live_data / 'config.ini').write_text('[app]\nmode = broken\n')
        (live_data / 'new-file.txt').write_text('created later')

        step = FilesStep(str(work), {'paths': [str(live_data)]})
        step.restore()

        # Nothing changes until commit
        assert (live_data / 'config.ini').read_text() == '[app]\nmode = broken\n'

        step.commit()

        assert (live_data / 'config.ini').read_text() == '[app]\nmode = production\n'
        assert (live_data / 'uploads' / 'nested' / 'notes.txt').read_text() == 'remember the milk'
        assert not (live_data / 'new-file.txt').exists()
        assert not (live_data / 'cache.pyc').exists()
        assert not (tmp_path / 'live.stowage-restore').exists()
        assert not (tmp_path / 'live.stowage-replaced').exists()

    def test_restore_keeps_excluded_live_paths(self, live_data, tmp_path):
        work = tmp_path / 'work'
        config = {'paths': [str(live_data)], 'exclude_patterns': ['*.pyc', '__pycache__']}
        FilesStep(str(work), config).backup()
        (live_data / 'uploads' / 'thumb.pyc').write_bytes(b'created later')
        (live_data / '__pycache__').mkdir()
        (live_data / '__pycache__' / 'mod.cpython.pyc').write_bytes(b'bytecode')
        (live_data / 'config.ini').write_text('changed')

        step = FilesStep(str(work), config)
        step.restore()
        step.commit()

        assert (live_data / 'config.ini').read_text() == '[app]\nmode = production\n'
        assert (live_data / 'cache.pyc').read_bytes() == b'compiled python'
        assert (live_data / 'uploads' / 'thumb.pyc').read_bytes() == b'created later'
        assert (live_data / '__pycache__' / 'mod.cpython.pyc').read_bytes() == b'bytecode'

    def test_backup_records_links_leaving_the_tree(self, live_data, tmp_path):
        outside = tmp_path / 'outside.txt'
        outside.write_text('outside')
        (live_data / 'absolute-link').symlink_to(outside)
        (live_data / 'uploads' / 'up-link').symlink_to('../../outside.txt')
        (live_data / 'inner-link').symlink_to('uploads/nested')
        work = tmp_path / 'work'

        FilesStep(str(work), {'paths': [str(live_data)]}).backup()

        copied = work / 'files' / '00-live'
        assert not os.path.lexists(copied / 'absolute-link')
        assert not os.path.lexists(copied / 'uploads' / 'up-link')
        assert os.readlink(copied / 'inner-link') == 'uploads/nested'

        manifest = json.loads((work / 'files' / 'manifest.json').read_text())
        assert sorted(manifest['entries'][0]['links'], key=lambda link: link['path']) == [
            {'path': 'absolute-link', 'target': str(outside)},
            {'path': 'uploads/up-link', 'target': '../../outside.txt'},
        ]

    def test_restore_recreates_recorded_links(self, live_data, tmp_path):
        outside = tmp_path / 'outside.txt'
        outside.write_text('outside')
        (live_data / 'absolute-link').symlink_to(outside)
        work = tmp_path / 'work'
        FilesStep(str(work), {'paths': [str(live_data)]}).backup()
        (live_data / 'absolute-link').unlink()

        step = FilesStep(str(work), {})
        step.restore()
        step.commit()

        assert os.readlink(live_data / 'absolute-link') == str(outside)

    def test_restore_rejects_unsafe_link_path(self, live_data, tmp_path):
        work = tmp_path / 'work'
        FilesStep(str(work), {'paths': [str(live_data)]}).backup()
        manifest_path = work / 'files' / 'manifest.json'
        manifest = json.loads(manifest_path.read_text())
        manifest['entries'][0]['links'] = [{'path': '../escape', 'target': '/etc/passwd'}]
        manifest_path.write_text(json.dumps(manifest))

        step = FilesStep(str(work), {})
        with pytest.raises(ValueError, match="Unsafe link path"):
            step.restore()
        step.discard()

        assert not (tmp_path / 'live.stowage-restore').exists()
        assert not (tmp_path / 'escape').exists()

    def test_restore_recreates_deleted_file(self, live_data, tmp_path):
        work = tmp_path / 'work'
        target = live_data / 'config.ini'
        FilesStep(str(work), {'paths': [str(target)]}).backup()
        target.unlink()

        step = FilesStep(str(work), {})
        step.restore()
        step.commit()

        assert target.read_text() == '[app]\nmode = production\n'

    def test_discard_drops_staged_changes(self, live_data, tmp_path):
        work = tmp_path / 'work'
        FilesStep(str(work), {'paths': [str(live_data)]}).backup()
        (live_data / 'config.ini').write_text('changed')

        step = FilesStep(str(work), {})
        step.restore()
        assert (tmp_path / 'live.stowage-restore').exists()

        step.discard()

        assert not (tmp_path / 'live.stowage-restore').exists()
        assert (live_data / 'config.ini').read_text() == 'changed'

    def test_restore_without_manifest(self, tmp_path):
        step = FilesStep(str(tmp_path / 'work'), {})

        with pytest.raises(FileNotFoundError, match="manifest missing"):
            step.restore()


class TestSshFilesStep:
    """Test SshFilesStep with a mocked paramiko client."""

    CONFIG = {
        'host': 'test.example.com',
        'username': 'testuser',
        'password': 'testpass',
        'paths': ['/etc/app.conf'],
    }

    def test_backup_downloads_file(self, mock_ssh_client, tmp_path):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.return_value = MagicMock(st_mode=0o100644)
        work = tmp_path / 'work'

        SshFilesStep(str(work), self.CONFIG).backup()

        connect_kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert connect_kwargs['hostname'] == 'test.example.com'
        assert connect_kwargs['username'] == 'testuser'
        assert connect_kwargs['password'] == 'testpass'

        sftp.get.assert_called_once_with('/etc/app.conf', str(work / 'ssh_files' / '00-app.conf'))
        manifest = json.loads((work / 'ssh_files' / 'manifest.json').read_text())
        assert manifest['entries'] == [{'entry': '00-app.conf', 'path': '/etc/app.conf', 'type': 'file'}]

        sftp.close.assert_called_once()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_backup_downloads_directory(self, mock_ssh_client, tmp_path):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.return_value = MagicMock(st_mode=0o040755)
        file_attr = MagicMock(filename='app.log', st_mode=0o100644)
        sftp.listdir_attr.return_value = [file_attr]
        work = tmp_path / 'work'

        SshFilesStep(str(work), dict(self.CONFIG, paths=['/var/log/app'])).backup()

        sftp.listdir_attr.assert_called_once_with('/var/log/app')
        sftp.get.assert_called_once_with('/var/log/app/app.log', str(work / 'ssh_files' / '00-app' / 'app.log'))

    def test_restore_uploads_entries(self, mock_ssh_client, tmp_path):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        step_dir = tmp_path / 'work' / 'ssh_files'
        step_dir.mkdir(parents=True)
        (step_dir / '00-app.conf').write_text('setting = 1')
        (step_dir / 'manifest.json').write_text(json.dumps({
            'entries': [{'entry': '00-app.conf', 'path': '/etc/app.conf', 'type': 'file'}]
        }))

        SshFilesStep(str(tmp_path / 'work'), self.CONFIG).restore()

        sftp.put.assert_called_once_with(str(step_dir / '00-app.conf'), '/etc/app.conf')
        mock_ssh_client.return_value.close.assert_called_once()

    def test_private_key_authentication(self, mock_ssh_client, tmp_path):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.return_value = MagicMock(st_mode=0o100644)
        key_file = tmp_path / 'id_rsa'
        key_file.write_text('fake key')
        config = {
            'host': 'test.example.com',
            'username': 'testuser',
            'private_key': str(key_file),
            'paths': ['/etc/app.conf'],
        }

        SshFilesStep(str(tmp_path / 'work'), config).backup()

        assert mock_ssh_client.return_value.connect.call_args[1]['key_filename'] == str(key_file)

    def test_missing_credentials(self, mock_ssh_client, tmp_path):
        config = {'host': 'test.example.com', 'username': 'testuser', 'paths': ['/etc/app.conf']}

        with pytest.raises(ValueError, match="password or private_key"):
            SshFilesStep(str(tmp_path / 'work'), config).backup()

    def test_authentication_failure_closes_client(self, mock_ssh_client, tmp_path):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException("Auth failed")

        with pytest.raises(ConnectionError, match="authentication failed"):
            SshFilesStep(str(tmp_path / 'work'), self.CONFIG).backup()

        mock_ssh_client.return_value.close.assert_called_once()


class TestStepRunner:
    """Test StepRunner instantiation and sequential execution."""

    def test_instantiate_keeps_configuration_order(self, step_registry, tmp_path):
        runner = StepRunner(step_registry)

        steps = runner.instantiate(str(tmp_path), {'dependent': {}, 'writer': {'content': 'x'}})

        assert [step.identifier for step in steps] == ['dependent', 'writer']
        assert steps[1].config == {'content': 'x'}

    def test_instantiate_unknown_step(self, step_registry, tmp_path):
        runner = StepRunner(step_registry)

        with pytest.raises(ValueError, match="Unknown backup step"):
            runner.instantiate(str(tmp_path), {'writer': {}, 'database': {}})

    def test_instantiate_subset_overrides_config(self, step_registry, tmp_path):
        runner = StepRunner(step_registry)

        steps = runner.instantiate(
            str(tmp_path),
            {'writer': {'content': 'default'}, 'dependent': {}},
            subset={'writer': {'content': 'recorded'}}
        )

        assert [step.identifier for step in steps] == ['writer']
        assert steps[0].config == {'content': 'recorded'}

    def test_run_backup_sequential(self, step_registry, step_calls, tmp_path):
        runner = StepRunner(step_registry)
        steps = runner.instantiate(str(tmp_path), {'writer': {'content': 'hello'}, 'dependent': {}})

        runner.run_backup(steps)

        assert step_calls == [('writer', 'backup'), ('dependent', 'backup')]
        assert (tmp_path / 'dependent' / 'derived.txt').read_text() == 'HELLO'

    def test_step_failure_wrapped_and_stops_run(self, step_registry, step_calls, tmp_path):
        runner = StepRunner(step_registry)
        steps = runner.instantiate(str(tmp_path), {'broken': {}, 'writer': {}})

        with pytest.raises(StepError) as exc_info:
            runner.run_backup(steps)

        assert exc_info.value.step == 'broken'
        assert exc_info.value.action == 'backup'
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert step_calls == [('broken', 'backup')]

    def test_cancellation_checked_between_steps(self, step_registry, step_calls, tmp_path):
        runner = StepRunner(step_registry)
        steps = runner.instantiate(str(tmp_path), {'writer': {}, 'dependent': {}})

        def cancel_after_first():
            if step_calls:
                raise OperationCancelledError("cancelled")

        with pytest.raises(OperationCancelledError):
            runner.run_backup(steps, cancel_after_first)

        assert step_calls == [('writer', 'backup')]

    def test_discard_never_raises(self, step_registry, step_calls, tmp_path):
        runner = StepRunner(step_registry)
        failing = MagicMock()
        failing.identifier = 'failing'
        failing.discard.side_effect = OSError("cannot remove")
        steps = runner.instantiate(str(tmp_path), {'dependent': {}})

        runner.discard([failing] + steps)

        assert step_calls == [('dependent', 'discard')]

    def test_backup_error_from_step_is_wrapped(self):
        runner = StepRunner()
        step = MagicMock()
        step.identifier = 'uploader'
        step.backup.side_effect = StorageError("bucket unreachable")

        with pytest.raises(StepError) as exc_info:
            runner.run_backup([step])

        assert exc_info.value.step == 'uploader'
        assert isinstance(exc_info.value.cause, StorageError)

    def test_step_error_passes_through(self):
        runner = StepRunner()
        step = MagicMock()
        step.identifier = 'outer'
        original = StepError('inner', 'restore', RuntimeError("boom"))
        step.restore.side_effect = original

        with pytest.raises(StepError) as exc_info:
            runner.run_restore([step])

        assert exc_info.value is original

#!/usr/bin/env python3

''' Self tests for cs.app.sshbackup.config.
'''

import os
from os.path import join as joinpath
from shutil import rmtree
from tempfile import mkdtemp
import unittest

from cs.app.sshbackup.archive import CommandArchive, DirArchive
from cs.app.sshbackup.config import (
    BackupConfig,
    CONFIG_ENVVAR,
    PreconditionError,
    default_config_path,
    load_config,
    subdirectory_names,
)

class TestConfig(unittest.TestCase):

  def setUp(self):
    self.tmpdir = mkdtemp()
    self.docs = joinpath(self.tmpdir, 'Documents')
    for subdir in 'Anki', 'books', 'code', 'videos', '.cache':
      os.makedirs(joinpath(self.docs, subdir))
    os.makedirs(joinpath(self.tmpdir, 'Desktop'))
    with open(joinpath(self.docs, 'loose.txt'), 'w') as f:
      f.write('not a directory\n')
    self.config_path = joinpath(self.tmpdir, 'sshbackuprc')

  def tearDown(self):
    rmtree(self.tmpdir)

  def load(self, text):
    with open(self.config_path, 'w') as f:
      f.write(text)
    return load_config(self.config_path)

  def test_defaults(self):
    config = self.load('')
    self.assertIsNone(config.remote)
    self.assertEqual(config.root, 'backups')
    self.assertEqual(config.passphrase_file, '/tmp/backup_pass')
    self.assertEqual(config.hashname, 'sha512')
    self.assertEqual(config.quota_argv, ('quota',))
    self.assertEqual(config.archives(), [])

  def test_general(self):
    config = self.load(
        '''
[sshbackup]
remote = rsyncnet
root = snapshots
hashname = sha256
gpg = gpg2
cipher_algo = AES256
quota =
'''
    )
    self.assertEqual(config.remote, 'rsyncnet')
    self.assertEqual(config.root, 'snapshots')
    self.assertEqual(config.hashname, 'sha256')
    self.assertEqual(config.gpg_exe, 'gpg2')
    self.assertEqual(config.cipher_algo, 'AES256')
    self.assertEqual(config.quota_argv, ())

  def test_bad_general(self):
    for text in (
        '[sshbackup]\nremoet = typo\n',
        '[sshbackup]\nroot = /abs\n',
        '[sshbackup]\nroot = ../up\n',
        '[sshbackup]\nroot = .\n',
        '[sshbackup]\nroot = ./\n',
        '[sshbackup]\nroot = backups/./x\n',
        '[sshbackup]\nhashname = nosuchhash\n',
    ):
      with self.subTest(text=text):
        with self.assertRaises(PreconditionError):
          self.load(text)

  def test_missing_file(self):
    with self.assertRaises(PreconditionError):
      load_config(joinpath(self.tmpdir, 'nosuchfile'))

  def test_archives(self):
    config = self.load(
        f'''
[Documents]
path = {self.docs}
exclude = videos
expect = Anki books code

[special]
path = {self.docs}/videos

[Desktop]
path = {self.tmpdir}/Desktop

[cmd_videos]
command = tree -a {self.docs}/videos
'''
    )
    archives = config.archives()
    self.assertEqual(
        [archive.filename for archive in archives],
        [
            'Anki.tar', 'books.tar', 'code.tar', 'videos.tar', 'Desktop.tar',
            'cmd_videos'
        ],
    )
    self.assertIsInstance(archives[0], DirArchive)
    self.assertEqual(archives[0].fspath, joinpath(self.docs, 'Anki'))
    self.assertIsInstance(archives[-1], CommandArchive)
    self.assertEqual(
        archives[-1].command, ('tree', '-a', f'{self.docs}/videos')
    )

  def test_expect_mismatch(self):
    config = self.load(
        f'''
[Documents]
path = {self.docs}
exclude = videos
expect = Anki books
'''
    )
    with self.assertRaises(PreconditionError) as cm:
      config.archives()
    self.assertIn('code', str(cm.exception))

  def test_exclude_only(self):
    config = self.load(f'[Documents]\npath = {self.docs}\nexclude = videos books\n')
    self.assertEqual(
        [archive.name for archive in config.archives()], ['Anki', 'code']
    )

  def test_duplicate_names(self):
    config = self.load(
        f'''
[Documents]
path = {self.docs}
exclude = videos

[books]
command = echo books
'''
    )
    with self.assertRaises(PreconditionError):
      config.archives()

  def test_duplicate_filenames(self):
    config = self.load(
        f'''
[Documents]
path = {self.docs}
exclude = videos

[code.tar]
command = echo code
'''
    )
    with self.assertRaises(PreconditionError) as cm:
      config.archives()
    self.assertIn("'code.tar'", str(cm.exception))

  def test_bad_sections(self):
    for text in (
        '[x]\n',
        '[x]\npath = /\ncommand = true\n',
        '[x]\ncommand = true\nexpect = a\n',
        '[x]\npath = /\nspeling = y\n',
    ):
      with self.subTest(text=text):
        with self.assertRaises(PreconditionError):
          self.load(text)

  def test_not_a_directory(self):
    config = self.load(f'[x]\npath = {self.tmpdir}/nosuchdir\n')
    with self.assertRaises(PreconditionError):
      config.archives()

  def test_subdirectory_names(self):
    self.assertEqual(
        subdirectory_names(self.docs), ['Anki', 'books', 'code', 'videos']
    )

  def test_default_config_path(self):
    self.assertEqual(default_config_path({CONFIG_ENVVAR: '/etc/sb.ini'}), '/etc/sb.ini')
    self.assertTrue(default_config_path({}).endswith('.sshbackuprc'))

  def test_no_sources(self):
    self.assertEqual(BackupConfig().archives(), [])

if __name__ == '__main__':
  unittest.main()

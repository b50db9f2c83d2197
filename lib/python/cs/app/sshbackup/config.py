#!/usr/bin/env python3

''' Configuration for `sshbackup`.

    The configuration is a Windows style `.ini` file.
    The `[sshbackup]` section holds the general settings
    and every other section, in file order,
    describes one or more archives:

        [sshbackup]
        remote = rsyncnet
        passphrase_file = /tmp/backup_pass

        # each subdirectory of ~/Documents except videos,
        # which must be exactly those listed in expect
        [Documents]
        path = ~/Documents
        exclude = videos
        expect = Anki archive books code

        # a single directory, archived as special.tar
        [special]
        path = ~/Documents/videos/special

        # the output of a command, archived as cmd_videos_findable
        [cmd_videos_findable]
        command = tree ~/Documents/videos/findable
'''

from configparser import RawConfigParser
from dataclasses import dataclass, field
import os
from os.path import (
    expanduser,
    isdir,
    join as joinpath,
)
import shlex
from typing import List, Optional, Tuple

from cs.configutils import load_config as load_ini
from cs.pfx import Pfx

from .archive import Archive, CommandArchive, DirArchive, TAR_EXE
from .fingerprint import HASHNAME_DEFAULT, check_hashname

CONFIG_ENVVAR = 'SSHBACKUP_CONFIG'
CONFIG_PATH_DEFAULT = '~/.sshbackuprc'
GENERAL_SECTION = 'sshbackup'
ROOT_DEFAULT = 'backups'
PASSPHRASE_FILE_DEFAULT = '/tmp/backup_pass'

class PreconditionError(ValueError):
  ''' A precondition for a backup run is not met.
      Nothing has been done to the remote store.
  '''

def default_config_path(environ=None) -> str:
  ''' The default configuration path:
      `$SSHBACKUP_CONFIG` or `~/.sshbackuprc`.
  '''
  if environ is None:
    environ = os.environ
  return environ.get(CONFIG_ENVVAR) or expanduser(CONFIG_PATH_DEFAULT)

def subdirectory_names(dirpath: str, exclude=()) -> List[str]:
  ''' Return the sorted names of the subdirectories of `dirpath`,
      omitting those in `exclude` and those commencing with a dot.
  '''
  with Pfx(dirpath):
    return sorted(
        entry.name
        for entry in os.scandir(dirpath)
        if entry.is_dir(follow_symlinks=False)
        and not entry.name.startswith('.') and entry.name not in exclude
    )

@dataclass(frozen=True)
class ArchiveSource:
  ''' A configuration section describing some archives.
  '''

  section: str
  path: Optional[str] = None
  command: Optional[str] = None
  expect: Optional[Tuple[str, ...]] = None
  exclude: Tuple[str, ...] = ()

  @classmethod
  def from_section(cls, section: str, items: dict):
    ''' Make an `ArchiveSource` from the configuration section `section`.
    '''
    with Pfx("[%s]", section):
      unknown = set(items) - {'path', 'command', 'expect', 'exclude'}
      if unknown:
        raise PreconditionError(f'unknown settings: {sorted(unknown)!r}')
      path = items.get('path') or None
      command = items.get('command') or None
      if (path is None) == (command is None):
        raise PreconditionError('exactly one of path or command is required')
      expect = items.get('expect')
      exclude = items.get('exclude', '')
      if command is not None and (expect is not None or exclude):
        raise PreconditionError('expect and exclude apply only to a path')
      return cls(
          section=section,
          path=path,
          command=command,
          expect=None if expect is None else tuple(expect.split()),
          exclude=tuple(exclude.split()),
      )

  @property
  def per_subdirectory(self) -> bool:
    ''' Whether each subdirectory of `.path` is a separate archive.
    '''
    return self.path is not None and (
        self.expect is not None or bool(self.exclude)
    )

  def archives(self, tar_exe: str = TAR_EXE, idle_io: bool = True) -> List[Archive]:
    ''' Return the `Archive`s described by this source.

        For a per subdirectory source the subdirectories are checked
        against `.expect` if specified, raising `PreconditionError`
        on a mismatch.
    '''
    with Pfx("[%s]", self.section):
      if self.command is not None:
        return [CommandArchive.from_shcmd(self.section, self.command)]
      dirpath = expanduser(self.path)
      if not isdir(dirpath):
        raise PreconditionError(f'not a directory: {dirpath!r}')
      if not self.per_subdirectory:
        return [DirArchive.from_path(dirpath, tar_exe=tar_exe, idle_io=idle_io)]
      names = subdirectory_names(dirpath, self.exclude)
      if self.expect is not None and names != sorted(self.expect):
        raise PreconditionError(
            'mismatched subdirectories of %s:\n  expected: %s\n  actual:   %s'
            % (dirpath, ' '.join(sorted(self.expect)), ' '.join(names))
        )
      return [
          DirArchive.from_path(
              joinpath(dirpath, name), tar_exe=tar_exe, idle_io=idle_io
          )
          for name in names
      ]

@dataclass
class BackupConfig:
  ''' The configuration for a backup run.
  '''

  config_path: Optional[str] = None
  remote: Optional[str] = None
  root: str = ROOT_DEFAULT
  passphrase_file: str = PASSPHRASE_FILE_DEFAULT
  hashname: str = HASHNAME_DEFAULT
  gpg_exe: str = 'gpg'
  cipher_algo: Optional[str] = None
  tar_exe: str = TAR_EXE
  idle_io: bool = True
  quota_argv: Tuple[str, ...] = ('quota',)
  local_root: Optional[str] = None
  sources: List[ArchiveSource] = field(default_factory=list)

  @classmethod
  def from_parser(cls, CP, config_path=None):
    ''' Make a `BackupConfig` from the `ConfigParser` `CP`.
    '''
    general = dict(CP[GENERAL_SECTION]) if CP.has_section(GENERAL_SECTION) else {}
    with Pfx("[%s]", GENERAL_SECTION):
      kw = {}
      for key, attr in (
          ('remote', 'remote'),
          ('root', 'root'),
          ('passphrase_file', 'passphrase_file'),
          ('hashname', 'hashname'),
          ('gpg', 'gpg_exe'),
          ('cipher_algo', 'cipher_algo'),
          ('tar', 'tar_exe'),
          ('local_root', 'local_root'),
      ):
        value = general.pop(key, None)
        if value:
          kw[attr] = value
      if 'quota' in general:
        kw['quota_argv'] = tuple(shlex.split(general.pop('quota')))
      if 'ionice' in general:
        value = general.pop('ionice')
        try:
          kw['idle_io'] = CP.BOOLEAN_STATES[value.lower()]
        except KeyError as e:
          raise PreconditionError(f'ionice: not a boolean: {value!r}') from e
      if general:
        raise PreconditionError(f'unknown settings: {sorted(general)!r}')
      if 'passphrase_file' in kw:
        kw['passphrase_file'] = expanduser(kw['passphrase_file'])
      if 'local_root' in kw:
        kw['local_root'] = expanduser(kw['local_root'])
    sources = [
        ArchiveSource.from_section(section, dict(CP[section]))
        for section in CP.sections()
        if section != GENERAL_SECTION
    ]
    config = cls(config_path=config_path, sources=sources, **kw)
    config.validate()
    return config

  def validate(self):
    ''' Check the general settings, raise `PreconditionError` if invalid.
    '''
    # retention removes everything in the root except the current slot
    if (not self.root or self.root.startswith('/')
        or any(part in ('.', '..') for part in self.root.split('/'))):
      raise PreconditionError(
          f'invalid root {self.root!r}: must be a relative path'
          ' without . or .. components'
      )
    try:
      check_hashname(self.hashname)
    except ValueError as e:
      raise PreconditionError(f'invalid hashname {self.hashname!r}: {e}') from e

  def archives(self) -> List[Archive]:
    ''' Expand the sources into a list of `Archive`s in configuration order.
        Raise `PreconditionError` if the subdirectory checks fail
        or if archive names or remote filenames are not unique.
    '''
    archives = []
    seen = {}
    for source in self.sources:
      for archive in source.archives(tar_exe=self.tar_exe, idle_io=self.idle_io):
        for attr in 'name', 'filename':
          key = attr, getattr(archive, attr)
          if key in seen:
            raise PreconditionError(
                f'archive {attr} {key[1]!r} from [{source.section}]'
                f' already used by [{seen[key]}]'
            )
          seen[key] = source.section
        archives.append(archive)
    return archives

def load_config(config_path: str) -> BackupConfig:
  ''' Load a `BackupConfig` from the `.ini` file `config_path`.
  '''
  with Pfx(config_path):
    if not os.path.isfile(config_path):
      raise PreconditionError('missing configuration file')
    CP = load_ini(config_path, parser=RawConfigParser)
    return BackupConfig.from_parser(CP, config_path=config_path)

#!/usr/bin/env python3

''' Archive producers.

    An `Archive` is one logical backup unit.
    Its `open()` method runs a command whose standard output is the
    archive's byte stream, which is consumed directly from the pipe
    and never written to local disk.

    A `DirArchive` streams an uncompressed `tar` of a directory.
    A `CommandArchive` streams the output of an arbitrary command,
    for example a `tree` listing of something too bulky to back up.
'''

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from os.path import (
    abspath,
    basename,
    dirname,
    expanduser,
)
import shlex
from shutil import which
from subprocess import CalledProcessError
from typing import List, Optional, Tuple

from typeguard import typechecked

from cs.pfx import Pfx
from cs.psutils import pipefrom

TAR_EXE = 'tar'
IONICE_ARGV = ('ionice', '-c', '3')

def idle_io_argv() -> List[str]:
  ''' The command prefix to run a command in the idle I/O scheduling class,
      empty if `ionice` is not available on this system.
  '''
  if which(IONICE_ARGV[0]):
    return list(IONICE_ARGV)
  return []

@dataclass(frozen=True)
class Archive(ABC):
  ''' Base class for a named source of archive data.
  '''

  name: str

  def __post_init__(self):
    with Pfx("%s(name=%r)", type(self).__name__, self.name):
      if not self.name:
        raise ValueError("empty name")
      if '/' in self.name:
        raise ValueError("name may not contain a slash")
      if self.name.startswith('.'):
        raise ValueError("name may not start with a dot")

  @property
  @abstractmethod
  def filename(self) -> str:
    ''' The remote file basename for this archive,
        before the encryption and sidecar suffixes.
    '''
    raise NotImplementedError

  @abstractmethod
  def argv(self) -> List[str]:
    ''' The command line whose output is the archive data.
    '''
    raise NotImplementedError

  def cwd(self) -> Optional[str]:
    ''' The working directory for the command, default `None`.
    '''
    return None

  @contextmanager
  def open(self):
    ''' Context manager running the archive command and yielding
        its standard output as a readable binary stream.

        The consumer should read the stream to the end.
        Raises `CalledProcessError` on exit if the command fails,
        for example if `tar` could not read part of the tree.
    '''
    argv = self.argv()
    with Pfx("%s: %s", self.name, shlex.join(argv)):
      P = pipefrom(argv, quiet=True, text=False, cwd=self.cwd())
      try:
        yield P.stdout
      except BaseException:
        P.kill()
        P.stdout.close()
        P.wait()
        raise
      P.stdout.close()
      returncode = P.wait()
      if returncode != 0:
        raise CalledProcessError(returncode, argv)

@dataclass(frozen=True)
class DirArchive(Archive):
  ''' An uncompressed `tar` archive of the filesystem path `fspath`.

      The `tar` runs in the parent directory of `fspath`
      so that the archive contains only the basename entry.
      It runs at idle I/O priority where `ionice` is available.
  '''

  fspath: str
  tar_exe: str = TAR_EXE
  idle_io: bool = True

  @classmethod
  @typechecked
  def from_path(cls, fspath: str, name: Optional[str] = None, **kw):
    ''' Make a `DirArchive` for `fspath`, named by its basename by default.
    '''
    fspath = abspath(expanduser(fspath))
    if name is None:
      name = basename(fspath)
    return cls(name=name, fspath=fspath, **kw)

  @property
  def filename(self) -> str:
    return self.name + '.tar'

  def cwd(self) -> str:
    return dirname(self.fspath)

  def argv(self) -> List[str]:
    entry = basename(self.fspath)
    if entry.startswith('-'):
      entry = './' + entry
    return [
        *(idle_io_argv() if self.idle_io else ()),
        self.tar_exe,
        '-cf',
        '-',
        entry,
    ]

@dataclass(frozen=True)
class CommandArchive(Archive):
  ''' The standard output of the command `command`.
  '''

  command: Tuple[str, ...]

  @classmethod
  @typechecked
  def from_shcmd(cls, name: str, shcmd: str):
    ''' Make a `CommandArchive` from the shell-like command string `shcmd`.
        Words commencing with `~` undergo home directory expansion
        but there is no other shell processing.
    '''
    command = tuple(
        expanduser(word) if word.startswith('~') else word
        for word in shlex.split(shcmd)
    )
    if not command:
      raise ValueError(f'{name}: empty command')
    return cls(name=name, command=command)

  @property
  def filename(self) -> str:
    return self.name

  def argv(self) -> List[str]:
    return list(self.command)

#!/usr/bin/env python3

''' The remote command gateway: the fixed vocabulary of operations
    which may be performed against the remote backup store.

    The remote store has no filesystem API of its own.
    Every operation is a discrete command invocation,
    a complete round trip with no session state
    beyond the remote filesystem itself.

    `CommandGateway` implements the vocabulary with ordinary Unix
    commands (`find`, `mkdir`, `mv`, `rm`, `ln`, `touch`, `dd`, `quota`)
    run via `ssh` on a remote host, or locally if there is no remote host.
    `MemoryGateway` implements it in memory for testing and dry runs.
'''

from abc import ABC, abstractmethod
from contextlib import contextmanager
from io import BytesIO
from os.path import basename
import posixpath
import re
from subprocess import (
    CalledProcessError,
    DEVNULL,
    PIPE,
    Popen,
    run as subprocess_run,
)
import sys
from typing import List, Optional

from icontract import require

from cs.pfx import Pfx, pfx_call
from cs.psutils import pipefrom, prep_argv, print_argv, run

# the exit status ssh uses for its own failures
SSH_FAILURE_EXIT = 255

def glob_escape(name: str) -> str:
  r''' Escape the glob special characters in `name`
      so that it matches literally in a `find -name` pattern.

          >>> glob_escape('a[1].tar')
          'a\\[1\\].tar'
  '''
  return re.sub(r'([*?\[\]\\])', r'\\\1', name)

class RemoteGateway(ABC):
  ''' The operations supported on the remote backup store.

      Remote paths are `/` separated strings,
      relative to the remote home directory.
  '''

  @abstractmethod
  def exists(self, rpath: str) -> bool:
    ''' Test whether `rpath` exists.
    '''
    raise NotImplementedError

  @abstractmethod
  def find(self, root: str, name: str) -> List[str]:
    ''' Return the paths of everything under `root` whose basename is `name`.
    '''
    raise NotImplementedError

  @abstractmethod
  def walk(self, root: str) -> List[str]:
    ''' Return the paths of `root` and everything beneath it.
    '''
    raise NotImplementedError

  @abstractmethod
  def listdir(self, rpath: str) -> List[str]:
    ''' Return the sorted names of the entries in the directory `rpath`.
    '''
    raise NotImplementedError

  @abstractmethod
  def makedirs(self, rpath: str):
    ''' Make the directory `rpath` and any missing parents.
    '''
    raise NotImplementedError

  @abstractmethod
  def move(self, src: str, dst: str):
    ''' Rename `src` to `dst`.
    '''
    raise NotImplementedError

  @abstractmethod
  def remove(self, rpath: str):
    ''' Remove `rpath` and anything beneath it. A missing `rpath` is not an error.
    '''
    raise NotImplementedError

  @abstractmethod
  def link(self, src: str, dst: str):
    ''' Hard link the file `src` to the new name `dst`.
    '''
    raise NotImplementedError

  @abstractmethod
  def touch(self, rpath: str):
    ''' Create `rpath` as an empty file if it does not exist.
    '''
    raise NotImplementedError

  @abstractmethod
  @contextmanager
  def writer(self, rpath: str):
    ''' Context manager yielding a writable binary stream
        whose contents are written to the new file `rpath`.
        The write is complete when the context manager exits cleanly.
    '''
    raise NotImplementedError

  @abstractmethod
  @contextmanager
  def reader(self, rpath: str):
    ''' Context manager yielding a readable binary stream
        with the contents of the file `rpath`.
    '''
    raise NotImplementedError

  @abstractmethod
  def quota(self) -> Optional[str]:
    ''' Return a text report of the remote quota usage,
        or `None` if that is not available.
    '''
    raise NotImplementedError

class CommandGateway(RemoteGateway):
  ''' A `RemoteGateway` running ordinary Unix commands,
      on the host `remote` via `ssh_exe` if `remote` is not `None`,
      otherwise locally in the directory `cwd`.
  '''

  @require(
      lambda remote, cwd: remote is None or cwd is None,
      'cwd may only be specified for a local gateway'
  )
  def __init__(
      self,
      remote: Optional[str] = None,
      *,
      ssh_exe: str = 'ssh',
      cwd: Optional[str] = None,
      quota_argv=('quota',),
      trace: bool = False,
  ):
    self.remote = remote
    self.ssh_exe = ssh_exe
    self.cwd = cwd
    self.quota_argv = list(quota_argv) if quota_argv else None
    self.trace = trace

  def __str__(self):
    if self.remote is None:
      return f'{type(self).__name__}({self.cwd or "."})'
    return f'{type(self).__name__}({self.remote}:)'

  def _argv(self, *argv) -> List[str]:
    ''' Prepare `argv` for execution, wrapped in `ssh` if remote.
    '''
    return prep_argv(*argv, remote=self.remote, ssh_exe=self.ssh_exe)

  def _run(self, *argv, **subp_options):
    ''' Run a command, raising `CalledProcessError` on failure.
    '''
    return run(
        argv,
        check=True,
        doit=True,
        quiet=not self.trace,
        remote=self.remote,
        ssh_exe=self.ssh_exe,
        cwd=self.cwd,
        **subp_options,
    )

  def _lines(self, *argv) -> List[str]:
    ''' Run a command and return its nonempty output lines.
    '''
    cp = self._run(*argv, stdout=PIPE, text=True)
    return [line for line in cp.stdout.split('\n') if line]

  def exists(self, rpath: str) -> bool:
    argv = self._argv('ls', '-d', '--', rpath)
    if self.trace:
      print_argv(*argv, indent0='+ ', file=sys.stderr)
    cp = pfx_call(
        subprocess_run,
        argv,
        stdin=DEVNULL,
        stdout=DEVNULL,
        stderr=DEVNULL,
        cwd=self.cwd,
    )
    if self.remote is not None and cp.returncode == SSH_FAILURE_EXIT:
      # not an answer about rpath, a failure to ask at all
      raise CalledProcessError(cp.returncode, argv)
    return cp.returncode == 0

  def find(self, root: str, name: str) -> List[str]:
    return self._lines('find', root, '-name', glob_escape(name))

  def walk(self, root: str) -> List[str]:
    return self._lines('find', root)

  def listdir(self, rpath: str) -> List[str]:
    return sorted(
        basename(subpath) for subpath in
        self._lines('find', rpath, '-mindepth', '1', '-maxdepth', '1')
    )

  def makedirs(self, rpath: str):
    self._run('mkdir', '-p', '--', rpath)

  def move(self, src: str, dst: str):
    self._run('mv', '--', src, dst)

  def remove(self, rpath: str):
    self._run('rm', '-rf', '--', rpath)

  def link(self, src: str, dst: str):
    self._run('ln', '--', src, dst)

  def touch(self, rpath: str):
    self._run('touch', '--', rpath)

  @contextmanager
  def writer(self, rpath: str):
    argv = self._argv('dd', f'of={rpath}', 'bs=1M')
    if self.trace:
      print_argv(*argv, indent0='| ', file=sys.stderr)
    with Pfx("write %s", rpath):
      with Popen(argv, stdin=PIPE, cwd=self.cwd) as P:
        yield P.stdin
      if P.returncode != 0:
        raise CalledProcessError(P.returncode, argv)

  @contextmanager
  def reader(self, rpath: str):
    argv = ['dd', f'if={rpath}', 'bs=1M']
    with Pfx("read %s", rpath):
      with pipefrom(
          argv,
          quiet=not self.trace,
          remote=self.remote,
          ssh_exe=self.ssh_exe,
          text=False,
          cwd=self.cwd,
      ) as P:
        yield P.stdout
      if P.returncode != 0:
        raise CalledProcessError(P.returncode, argv)

  def quota(self) -> Optional[str]:
    if not self.quota_argv:
      return None
    cp = self._run(*self.quota_argv, stdout=PIPE, text=True)
    return cp.stdout.rstrip()

class _MemoryWriter:
  ''' A minimal binary writer appending to a `bytearray`.
  '''

  def __init__(self, data: bytearray):
    self.data = data
    self.closed = False

  def write(self, bs) -> int:
    if self.closed:
      raise ValueError("write to closed writer")
    self.data.extend(bs)
    return len(bs)

  def flush(self):
    pass

  def close(self):
    self.closed = True

class MemoryGateway(RemoteGateway):
  ''' An in memory `RemoteGateway`.

      Directories are kept in the set `.dirs`
      and files in the mapping `.files` of path to `bytearray`.
      Hard links share the same `bytearray`.
      Every mutating operation is recorded in `.ops`
      as an `(opname,*args)` tuple.
  '''

  def __init__(self):
    self.dirs = {'.'}
    self.files = {}
    self.ops = []

  def __str__(self):
    return f'{type(self).__name__}({len(self.dirs)} dirs, {len(self.files)} files)'

  @staticmethod
  def _norm(rpath: str) -> str:
    return posixpath.normpath(rpath)

  @staticmethod
  def _parent(rpath: str) -> str:
    return posixpath.dirname(rpath) or '.'

  def _under(self, root: str):
    ''' Yield `root` and every path beneath it.
    '''
    prefix = '' if root == '.' else root + '/'
    for rpath in list(self.dirs) + list(self.files):
      if rpath == root or rpath.startswith(prefix):
        yield rpath

  def _needdir(self, rpath: str):
    if rpath not in self.dirs:
      raise FileNotFoundError(f'no such directory: {rpath!r}')

  def exists(self, rpath: str) -> bool:
    rpath = self._norm(rpath)
    return rpath in self.dirs or rpath in self.files

  def find(self, root: str, name: str) -> List[str]:
    root = self._norm(root)
    self._needdir(root)
    return sorted(
        rpath for rpath in self._under(root)
        if posixpath.basename(rpath) == name
    )

  def walk(self, root: str) -> List[str]:
    root = self._norm(root)
    if not self.exists(root):
      raise FileNotFoundError(root)
    return sorted(self._under(root))

  def listdir(self, rpath: str) -> List[str]:
    rpath = self._norm(rpath)
    self._needdir(rpath)
    return sorted(
        posixpath.basename(subpath)
        for subpath in self._under(rpath)
        if subpath != rpath and self._parent(subpath) == rpath
    )

  def makedirs(self, rpath: str):
    rpath = self._norm(rpath)
    self.ops.append(('makedirs', rpath))
    while rpath not in self.dirs:
      if rpath in self.files:
        raise FileExistsError(rpath)
      self.dirs.add(rpath)
      rpath = self._parent(rpath)

  def move(self, src: str, dst: str):
    src = self._norm(src)
    dst = self._norm(dst)
    self.ops.append(('move', src, dst))
    if not self.exists(src):
      raise FileNotFoundError(src)
    if self.exists(dst):
      raise FileExistsError(dst)
    self._needdir(self._parent(dst))
    for rpath in sorted(self._under(src)):
      newpath = dst + rpath[len(src):]
      if rpath in self.dirs:
        self.dirs.remove(rpath)
        self.dirs.add(newpath)
      else:
        self.files[newpath] = self.files.pop(rpath)

  def remove(self, rpath: str):
    rpath = self._norm(rpath)
    self.ops.append(('remove', rpath))
    for subpath in list(self._under(rpath)):
      self.dirs.discard(subpath)
      self.files.pop(subpath, None)

  def link(self, src: str, dst: str):
    src = self._norm(src)
    dst = self._norm(dst)
    self.ops.append(('link', src, dst))
    if src not in self.files:
      raise FileNotFoundError(src)
    if self.exists(dst):
      raise FileExistsError(dst)
    self._needdir(self._parent(dst))
    self.files[dst] = self.files[src]

  def touch(self, rpath: str):
    rpath = self._norm(rpath)
    self.ops.append(('touch', rpath))
    self._needdir(self._parent(rpath))
    if rpath not in self.dirs and rpath not in self.files:
      self.files[rpath] = bytearray()

  @contextmanager
  def writer(self, rpath: str):
    rpath = self._norm(rpath)
    self.ops.append(('write', rpath))
    self._needdir(self._parent(rpath))
    data = self.files.get(rpath)
    if data is None:
      data = self.files[rpath] = bytearray()
    else:
      # truncate in place, as dd of= does
      del data[:]
    w = _MemoryWriter(data)
    try:
      yield w
    finally:
      w.close()

  @contextmanager
  def reader(self, rpath: str):
    rpath = self._norm(rpath)
    try:
      data = self.files[rpath]
    except KeyError as e:
      raise FileNotFoundError(rpath) from e
    yield BytesIO(bytes(data))

  def quota(self) -> Optional[str]:
    inodes = {id(data): data for data in self.files.values()}
    nbytes = sum(len(data) for data in inodes.values())
    return f'{len(inodes)} files, {nbytes} bytes'

  def samefile(self, rpath1: str, rpath2: str) -> bool:
    ''' Test whether `rpath1` and `rpath2` are hard links to the same file.
    '''
    return self.files[self._norm(rpath1)] is self.files[self._norm(rpath2)]

  def read_bytes(self, rpath: str) -> bytes:
    ''' Return the contents of the file `rpath`.
    '''
    return bytes(self.files[self._norm(rpath)])

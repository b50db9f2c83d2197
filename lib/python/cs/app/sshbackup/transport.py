#!/usr/bin/env python3

''' Encrypted transport of archive streams to the remote store.

    This outsources the crypto to the `gpg` command,
    using symmetric encryption with a passphrase
    supplied on a pipe, never on the command line.
    The ciphertext is pumped directly into a remote writer
    from the gateway; nothing is staged on local or remote disk.
'''

from contextlib import contextmanager
import os
from shutil import copyfileobj
from stat import S_IMODE
from subprocess import CalledProcessError, PIPE, Popen
from typing import List, Optional

from typeguard import typechecked

from cs.buffer import CornuCopyBuffer
from cs.logutils import warning
from cs.pfx import Pfx, pfx_call
from cs.threads import bg

from .config import PreconditionError
from .fingerprint import CHUNK_SIZE

GPG_EXE = 'gpg'

@typechecked
def load_passphrase(path: str) -> str:
  ''' Read the encryption passphrase from the first line of the file `path`.
      Raise `PreconditionError` if the file is missing or the passphrase empty.
      Issue a warning if the file is accessible by group or other.
  '''
  with Pfx(path):
    try:
      S = os.stat(path)
    except FileNotFoundError as e:
      raise PreconditionError("missing passphrase file") from e
    if S_IMODE(S.st_mode) & 0o077:
      warning("passphrase file is accessible by others, mode %04o", S_IMODE(S.st_mode))
    with pfx_call(open, path, 'rb') as f:
      lines = f.read().decode().splitlines()
    passphrase = lines[0] if lines else ''
    if not passphrase:
      raise PreconditionError("empty passphrase")
    return passphrase

class GPGTransport:
  ''' Send and receive `gpg` symmetrically encrypted files via a gateway.
  '''

  def __init__(
      self,
      gateway,
      passphrase: str,
      *,
      gpg_exe: str = GPG_EXE,
      cipher_algo: Optional[str] = None,
  ):
    if not passphrase:
      raise PreconditionError("empty passphrase")
    if '\n' in passphrase:
      raise ValueError("passphrase may not contain a newline")
    self.gateway = gateway
    self._passphrase = passphrase
    self.gpg_exe = gpg_exe
    self.cipher_algo = cipher_algo

  def __str__(self):
    return f'{type(self).__name__}({self.gpg_exe}->{self.gateway})'

  __repr__ = __str__

  def _gpg_argv(self, passphrase_fd: int) -> List[str]:
    return [
        self.gpg_exe,
        '--batch',
        '--quiet',
        '--pinentry-mode',
        'loopback',
        '--passphrase-fd',
        str(passphrase_fd),
    ]

  def encrypt_argv(self, passphrase_fd: int) -> List[str]:
    ''' The command line to encrypt standard input to standard output.
        Compression is disabled, the archives are stored as is.
    '''
    argv = self._gpg_argv(passphrase_fd)
    argv.extend(('--compress-algo', 'none'))
    if self.cipher_algo:
      argv.extend(('--cipher-algo', self.cipher_algo))
    argv.append('--symmetric')
    return argv

  def decrypt_argv(self, passphrase_fd: int) -> List[str]:
    ''' The command line to decrypt standard input to standard output.
    '''
    return self._gpg_argv(passphrase_fd) + ['--decrypt']

  def _popen(self, mkargv, **popen_kw):
    ''' Dispatch `gpg` with the passphrase on a pipe.
        Return `(argv,Popen)`.
    '''
    # stash the passphrase in a pipe
    passphrase_fd = CornuCopyBuffer([(self._passphrase + '\n').encode()
                                     ]).as_fd()
    try:
      argv = mkargv(passphrase_fd)
      P = pfx_call(Popen, argv, pass_fds=(passphrase_fd,), **popen_kw)
    finally:
      os.close(passphrase_fd)
    return argv, P

  def _pump(self, gpg_stdout, rpath: str, errors: list):
    ''' Copy the ciphertext from `gpg_stdout` to the remote file `rpath`.
        Exceptions are appended to `errors`.
    '''
    try:
      with self.gateway.writer(rpath) as rf:
        copyfileobj(gpg_stdout, rf, CHUNK_SIZE)
    except Exception as e:  # pylint: disable=broad-exception-caught
      errors.append(e)
      # keep draining so that gpg does not block
      while gpg_stdout.read(CHUNK_SIZE):
        pass
    finally:
      gpg_stdout.close()

  @contextmanager
  def sending(self, rpath: str):
    ''' Context manager yielding a writable binary stream
        whose contents are encrypted and written to the remote file `rpath`.
        The upload is complete when the context manager exits cleanly.
        Raises `CalledProcessError` if `gpg` fails
        or the exception from the remote writer if that fails.
    '''
    with Pfx("send %s", rpath):
      argv, P = self._popen(self.encrypt_argv, stdin=PIPE, stdout=PIPE)
      errors = []
      T = bg(
          self._pump,
          name=f'{self}.sending({rpath!r})',
          args=(P.stdout, rpath, errors),
      )
      try:
        yield P.stdin
      except BaseException:
        P.kill()
        try:
          P.stdin.close()
        except BrokenPipeError:
          pass
        T.join()
        P.wait()
        raise
      try:
        P.stdin.close()
      except BrokenPipeError:
        # gpg exited early, its status is collected below
        pass
      T.join()
      returncode = P.wait()
      if returncode != 0:
        raise CalledProcessError(returncode, argv)
      if errors:
        raise errors[0]

  def send(self, f, rpath: str) -> int:
    ''' Encrypt the binary stream `f` to the remote file `rpath`.
        Return the number of plaintext bytes sent.
    '''
    nbytes = 0
    with self.sending(rpath) as gpg_stdin:
      while True:
        bs = f.read(CHUNK_SIZE)
        if not bs:
          break
        gpg_stdin.write(bs)
        nbytes += len(bs)
    return nbytes

  def receive(self, rpath: str, outf):
    ''' Fetch and decrypt the remote file `rpath`,
        writing the plaintext to the local binary file `outf`
        which must have a file descriptor.
    '''
    with Pfx("receive %s", rpath):
      outf.flush()
      with self.gateway.reader(rpath) as rf:
        argv, P = self._popen(self.decrypt_argv, stdin=PIPE, stdout=outf)
        try:
          copyfileobj(rf, P.stdin, CHUNK_SIZE)
        except BaseException:
          P.kill()
          P.wait()
          raise
        try:
          P.stdin.close()
        except BrokenPipeError:
          pass
        returncode = P.wait()
      if returncode != 0:
        raise CalledProcessError(returncode, argv)

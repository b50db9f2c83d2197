#!/usr/bin/env python3

''' Content fingerprints of archive streams.

    A fingerprint is the hex digest of an archive's raw bytes,
    before encryption.
    It is recorded remotely as a zero length "sidecar" file
    named `{filename}.{hexdigest}` beside the encrypted archive
    `{filename}.gpg`.
    The presence of a sidecar implies that the encrypted archive
    beside it was completely written.
'''

from typing import Optional, Tuple

from icontract import require
from typeguard import typechecked

from cs.hashutils import BaseHashCode
from cs.pfx import pfx_call

HASHNAME_DEFAULT = 'sha512'
ENCRYPTED_SUFFIX = '.gpg'
# read size for the archive streams
CHUNK_SIZE = 1024 * 1024

def hashclass(hashname: str):
  ''' Return the `BaseHashCode` subclass for `hashname`.
      Raise `ValueError` for an unknown or variable length algorithm.
  '''
  try:
    hashcls = pfx_call(BaseHashCode.hashclass, hashname)
  except TypeError as e:
    # shake_* digests need a length
    raise ValueError(
        f'{hashname!r}: variable length digests are not supported'
    ) from e
  if not getattr(hashcls, 'hashlen', 0):
    raise ValueError(f'{hashname!r}: variable length digests are not supported')
  return hashcls

def check_hashname(hashname: str):
  ''' Check that `hashname` names a fixed length hash algorithm,
      raise `ValueError` if not.
  '''
  hashclass(hashname)

def encrypted_name(filename: str) -> str:
  ''' The name of the encrypted archive for `filename`.
  '''
  return filename + ENCRYPTED_SUFFIX

@require(lambda hexdigest: bool(hexdigest) and all(c in '0123456789abcdef' for c in hexdigest))
def sidecar_name(filename: str, hexdigest: str) -> str:
  ''' The name of the sidecar recording that `filename` has fingerprint `hexdigest`.
  '''
  return f'{filename}.{hexdigest}'

def parse_sidecar_name(name: str) -> Optional[Tuple[str, str]]:
  ''' Parse a sidecar name, return `(filename,hexdigest)`
      or `None` if `name` does not look like a sidecar.
  '''
  try:
    filename, hexdigest = name.rsplit('.', 1)
  except ValueError:
    return None
  if (not filename or len(hexdigest) < 32
      or any(c not in '0123456789abcdef' for c in hexdigest)):
    return None
  return filename, hexdigest

class HashingTee:
  ''' A tap which hashes bytes on their way from a source to a sink.

      Each chunk passed to `write()` updates the digest
      and is then written unchanged to `sink`,
      or discarded if `sink` is `None`.
      Memory use does not depend on the length of the stream.
  '''

  @typechecked
  def __init__(self, hashname: str = HASHNAME_DEFAULT, sink=None):
    self.hashname = hashname
    self.hashcls = hashclass(hashname)
    self.hasher = self.hashcls.hashfunc()
    self.sink = sink
    self.nbytes = 0

  def __str__(self):
    return f'{type(self).__name__}({self.hashname}:{self.nbytes})'

  def write(self, bs) -> int:
    ''' Hash `bs` and pass it to the sink.
    '''
    self.hasher.update(bs)
    if self.sink is not None:
      self.sink.write(bs)
    self.nbytes += len(bs)
    return len(bs)

  def copy_from(self, f, chunk_size: int = CHUNK_SIZE) -> int:
    ''' Copy the binary stream `f` through the tee until end of file.
        Return the number of bytes copied.
    '''
    copied = 0
    while True:
      bs = f.read(chunk_size)
      if not bs:
        break
      self.write(bs)
      copied += len(bs)
    return copied

  @property
  def hexdigest(self) -> str:
    ''' The hex digest of the bytes seen so far.
    '''
    return self.hashcls.from_hashbytes(self.hasher.digest()).hex()

def fingerprint(archive, hashname: str = HASHNAME_DEFAULT) -> Tuple[str, int]:
  ''' Compute the fingerprint of `archive`.
      Return `(hexdigest,nbytes)`.
  '''
  tee = HashingTee(hashname)
  with archive.open() as f:
    tee.copy_from(f)
  return tee.hexdigest, tee.nbytes

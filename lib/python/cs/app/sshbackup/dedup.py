#!/usr/bin/env python3

''' Locate an existing remote copy of an archive by its fingerprint.
'''

from collections import namedtuple
import posixpath
from typing import Optional

from cs.logutils import warning
from cs.pfx import Pfx

from .fingerprint import encrypted_name, sidecar_name

class DedupMatch(namedtuple('DedupMatch', 'slot filename sidecar')):
  ''' A remote sidecar matching an archive fingerprint.
      `slot` is the remote slot directory holding the sidecar,
      `filename` is the archive filename
      and `sidecar` is the path of the sidecar itself.
  '''

  @property
  def encrypted_path(self) -> str:
    ''' The path of the matching encrypted archive.
    '''
    return posixpath.join(self.slot, encrypted_name(self.filename))

def resolve(gateway, root: str, filename: str,
            hexdigest: str) -> Optional[DedupMatch]:
  ''' Search every slot under the remote backup `root`
      for a sidecar recording that `filename` has the fingerprint `hexdigest`.
      Return a `DedupMatch` for the newest usable match
      or `None` if there is no match.

      Since a sidecar is only written after its encrypted archive is complete,
      the matching archive can be hard linked into a new slot
      instead of uploading the content again.
      This requires the slots to be on a filesystem supporting hard links.

      The newest slot is preferred.
      A sidecar whose encrypted archive is missing,
      as after an interrupted retention, is skipped.
  '''
  name = sidecar_name(filename, hexdigest)
  with Pfx("resolve %s", filename):
    for sidecar in sorted(gateway.find(root, name), reverse=True):
      match = DedupMatch(
          slot=posixpath.dirname(sidecar),
          filename=filename,
          sidecar=sidecar,
      )
      if gateway.exists(match.encrypted_path):
        return match
      warning("ignoring %s: missing %s", sidecar, match.encrypted_path)
    return None

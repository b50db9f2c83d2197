#!/usr/bin/env python3

''' A backup run: rotate the remote slots, back up each archive
    into today's slot, then remove everything else.

    Each archive is committed independently
    as an encrypted file `{filename}.gpg`
    followed by its zero length sidecar `{filename}.{hexdigest}`.
    An archive whose fingerprint is found in any slot
    is hard linked from there instead of being uploaded again.

    Any failure aborts the run immediately.
    No retention cleanup happens after a failure,
    and the rotation at the start of the next run is the recovery path.
'''

from collections import namedtuple
from dataclasses import dataclass, field
from datetime import date as Date
import posixpath
from typing import Iterable, List, Optional, Tuple

from icontract import require

from cs.logutils import info, warning
from cs.pfx import Pfx
from cs.units import BINARY_BYTES_SCALE, transcribe
from cs.upd import run_task

from .dedup import resolve
from .fingerprint import (
    HASHNAME_DEFAULT,
    HashingTee,
    check_hashname,
    encrypted_name,
    fingerprint,
    sidecar_name,
)
from .rotation import SlotAction, probe, retain, rotate, slot_paths

ROOT_DEFAULT = 'backups'

def check_unique_names(archives):
  ''' Raise `ValueError` if any archive name or remote filename
      occurs more than once.
  '''
  for attr in 'name', 'filename':
    seen = set()
    dups = set()
    for archive in archives:
      value = getattr(archive, attr)
      if value in seen:
        dups.add(value)
      seen.add(value)
    if dups:
      raise ValueError(f'duplicate archive {attr}s: {", ".join(sorted(dups))}')

def transcribe_bytes(nbytes: int) -> str:
  ''' A short human friendly transcription of a byte count.
  '''
  return transcribe(nbytes, BINARY_BYTES_SCALE, max_parts=1)

class ArchiveOutcome(namedtuple('ArchiveOutcome',
                                'name filename hexdigest nbytes linked_from')):
  ''' The result of backing up one archive.
      `linked_from` is the slot from which the encrypted archive was linked,
      or `None` if it was uploaded.
  '''

  @property
  def uploaded(self) -> bool:
    return self.linked_from is None

@dataclass
class RunSummary:
  ''' The result of a complete backup run.
  '''

  date: str
  action: SlotAction
  outcomes: List[ArchiveOutcome] = field(default_factory=list)
  removed: List[str] = field(default_factory=list)
  quotas: List[Tuple[str, str]] = field(default_factory=list)

  @property
  def uploaded(self) -> List[ArchiveOutcome]:
    return [outcome for outcome in self.outcomes if outcome.uploaded]

  @property
  def linked(self) -> List[ArchiveOutcome]:
    return [outcome for outcome in self.outcomes if not outcome.uploaded]

class BackupRun:
  ''' A backup run into the slot `{root}/{date}` via a gateway and transport.

      In the default mode each archive is read once to compute its fingerprint.
      Only if no matching sidecar exists is the archive read again
      for upload through the transport.
      In single pass mode (`single_pass=True`)
      each archive is read once,
      hashed on its way to the transport,
      and replaced with a hard link afterwards if a match is found.
  '''

  @require(
      lambda date: date is None or (date and '/' not in date),
      'date must be a plain slot name'
  )
  def __init__(
      self,
      gateway,
      transport,
      *,
      root: str = ROOT_DEFAULT,
      date: Optional[str] = None,
      hashname: str = HASHNAME_DEFAULT,
      single_pass: bool = False,
  ):
    check_hashname(hashname)
    if date is None:
      date = Date.today().isoformat()
    self.gateway = gateway
    self.transport = transport
    self.root = root
    self.date = date
    self.hashname = hashname
    self.single_pass = single_pass
    self.dest, self.bak = slot_paths(root, date)

  def __str__(self):
    return f'{type(self).__name__}({self.gateway}:{self.dest})'

  def encrypted_path(self, archive) -> str:
    ''' The path of the encrypted archive in the destination slot.
    '''
    return posixpath.join(self.dest, encrypted_name(archive.filename))

  def sidecar_path(self, archive, hexdigest: str) -> str:
    ''' The path of the sidecar for `archive` in the destination slot.
    '''
    return posixpath.join(self.dest, sidecar_name(archive.filename, hexdigest))

  def sample_quota(self, label: str, quotas: list):
    ''' Append `(label,report)` to `quotas` if the gateway reports a quota.
    '''
    report = self.gateway.quota()
    if report is not None:
      quotas.append((label, report))

  def plan(self, archives) -> SlotAction:
    ''' Check `archives` and return the `SlotAction` a run would take,
        without modifying the remote store.
    '''
    check_unique_names(archives)
    return probe(self.gateway, self.dest, self.bak)

  def run(self, archives: Iterable) -> RunSummary:
    ''' Back up `archives` in order. Return a `RunSummary`.
    '''
    archives = list(archives)
    check_unique_names(archives)
    with Pfx(self.dest):
      summary = RunSummary(date=self.date, action=None)
      self.sample_quota('begin', summary.quotas)
      summary.action = rotate(self.gateway, self.dest, self.bak)
      for archive in archives:
        summary.outcomes.append(self.backup_archive(archive))
      self.sample_quota('max', summary.quotas)
      summary.removed = retain(self.gateway, self.root, self.date)
      self.sample_quota('end', summary.quotas)
    info(
        "%s complete: %d uploaded, %d linked",
        self.dest,
        len(summary.uploaded),
        len(summary.linked),
    )
    return summary

  def backup_archive(self, archive) -> ArchiveOutcome:
    ''' Back up `archive` into the destination slot.
    '''
    with Pfx("backup %s", archive.name):
      if self.single_pass:
        outcome = self._backup_single_pass(archive)
      else:
        outcome = self._backup_hash_first(archive)
      # the sidecar is only written once its archive is complete
      self.gateway.touch(self.sidecar_path(archive, outcome.hexdigest))
      if outcome.uploaded:
        info(
            "%s: uploaded %s to %s", archive.name,
            transcribe_bytes(outcome.nbytes), self.encrypted_path(archive)
        )
      else:
        info(
            "%s: linked %s from %s", archive.name,
            transcribe_bytes(outcome.nbytes), outcome.linked_from
        )
      return outcome

  def _link(self, archive, match):
    ''' Hard link the matching encrypted archive into the destination slot.
    '''
    self.gateway.link(match.encrypted_path, self.encrypted_path(archive))

  def _upload(self, archive) -> Tuple[str, int]:
    ''' Read `archive` once, hashing it on its way through the transport.
        Return `(hexdigest,nbytes)` for the bytes uploaded.
    '''
    rpath = self.encrypted_path(archive)
    with run_task(f'upload {archive.name} -> {rpath}'):
      with self.transport.sending(rpath) as sink:
        tee = HashingTee(self.hashname, sink)
        with archive.open() as f:
          tee.copy_from(f)
    return tee.hexdigest, tee.nbytes

  def _backup_hash_first(self, archive) -> ArchiveOutcome:
    with run_task(f'fingerprint {archive.name}'):
      hexdigest, nbytes = fingerprint(archive, self.hashname)
    match = resolve(self.gateway, self.root, archive.filename, hexdigest)
    if match is not None:
      self._link(archive, match)
      return ArchiveOutcome(
          archive.name, archive.filename, hexdigest, nbytes, match.slot
      )
    uploaded_hexdigest, nbytes = self._upload(archive)
    if uploaded_hexdigest != hexdigest:
      warning(
          "%s changed during the backup, recording the fingerprint of the uploaded data",
          archive.name
      )
    return ArchiveOutcome(
        archive.name, archive.filename, uploaded_hexdigest, nbytes, None
    )

  def _backup_single_pass(self, archive) -> ArchiveOutcome:
    hexdigest, nbytes = self._upload(archive)
    match = resolve(self.gateway, self.root, archive.filename, hexdigest)
    if match is not None and match.slot != self.dest:
      # share the existing copy instead of the fresh upload
      rpath = self.encrypted_path(archive)
      self.gateway.remove(rpath)
      self._link(archive, match)
      return ArchiveOutcome(
          archive.name, archive.filename, hexdigest, nbytes, match.slot
      )
    return ArchiveOutcome(archive.name, archive.filename, hexdigest, nbytes, None)

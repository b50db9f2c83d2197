#!/usr/bin/env python3

''' The two slot rotation of remote snapshot directories.

    A run on the date `D` owns the destination slot `{root}/D`.
    At the start of a run an existing destination is either
    preserved as the backup slot `{root}/D.bak`
    or discarded if that backup slot is already occupied,
    in which case the destination is the residue of an interrupted run
    and the last good snapshot is the one in the backup slot.

    Nothing else is removed until the run completes,
    when every slot except the destination is removed by `retain()`.
    Thus a crash at any point leaves a consumable last good snapshot.
'''

from enum import Enum
import posixpath
from typing import List

from cs.logutils import info
from cs.pfx import Pfx

BAK_SUFFIX = '.bak'

class SlotAction(Enum):
  ''' The action taken on an existing destination slot at the start of a run.
  '''
  CREATE = 'create'  # no destination, make a fresh one
  PRESERVE = 'preserve'  # move the destination to the backup slot
  DISCARD = 'discard'  # remove the destination, the backup slot has the last good snapshot

def slot_paths(root: str, date: str):
  ''' Return the `(dest,bak)` slot paths for `date` under `root`.
  '''
  dest = posixpath.join(root, date)
  return dest, dest + BAK_SUFFIX

def rotation_action(dest_exists: bool, bak_exists: bool) -> SlotAction:
  ''' Compute the `SlotAction` from the existence of the destination
      and backup slots.
  '''
  if not dest_exists:
    return SlotAction.CREATE
  if not bak_exists:
    return SlotAction.PRESERVE
  return SlotAction.DISCARD

def probe(gateway, dest: str, bak: str) -> SlotAction:
  ''' Return the `SlotAction` which `rotate()` would take, without doing it.
  '''
  dest_exists = gateway.exists(dest)
  bak_exists = gateway.exists(bak) if dest_exists else False
  return rotation_action(dest_exists, bak_exists)

def rotate(gateway, dest: str, bak: str) -> SlotAction:
  ''' Prepare an empty destination slot `dest`,
      preserving an existing destination as `bak` if that is unoccupied.
      Return the `SlotAction` taken.
  '''
  with Pfx("rotate %s", dest):
    action = probe(gateway, dest, bak)
    if action is SlotAction.PRESERVE:
      info("preserving %s as %s", dest, bak)
      gateway.move(dest, bak)
    elif action is SlotAction.DISCARD:
      info("%s already exists, discarding incomplete %s", bak, dest)
      gateway.remove(dest)
    gateway.makedirs(dest)
    return action

def retain(gateway, root: str, keep: str) -> List[str]:
  ''' Remove every top level entry of `root` except `keep`.
      Return the list of removed paths.

      This is only called after the slot `keep` is complete.
  '''
  removed = []
  with Pfx("retain %s in %s", keep, root):
    for name in gateway.listdir(root):
      if name == keep:
        continue
      rpath = posixpath.join(root, name)
      info("remove %s", rpath)
      gateway.remove(rpath)
      removed.append(rpath)
  return removed

#!/usr/bin/env python3

''' Self tests for cs.app.sshbackup.run,
    using an in memory gateway and a plaintext transport.
'''

from contextlib import contextmanager
from dataclasses import dataclass, field
import hashlib
from io import BytesIO
from subprocess import CalledProcessError
from typing import Tuple
import unittest

from cs.app.sshbackup.archive import Archive, CommandArchive
from cs.app.sshbackup.gateway import MemoryGateway
from cs.app.sshbackup.rotation import SlotAction
from cs.app.sshbackup.run import BackupRun

D0 = '2023-12-31'
D1 = '2024-01-01'
D2 = '2024-01-02'

def sha512(data):
  return hashlib.sha512(data).hexdigest()

@dataclass(frozen=True)
class BytesArchive(Archive):
  ''' An archive whose successive reads produce successive entries of `datas`,
      repeating the last entry.
  '''

  datas: Tuple[bytes, ...] = (b'',)
  fail: bool = False
  reads: list = field(default_factory=list, compare=False)

  @property
  def filename(self):
    return self.name + '.tar'

  def argv(self):
    return ['cat']

  @contextmanager
  def open(self):
    data = self.datas[min(len(self.reads), len(self.datas) - 1)]
    self.reads.append(data)
    yield BytesIO(data)
    if self.fail:
      raise CalledProcessError(2, self.argv())

class PlainTransport:
  ''' A transport which writes the plaintext and counts uploads.
  '''

  def __init__(self, gateway):
    self.gateway = gateway
    self.sent = []

  @contextmanager
  def sending(self, rpath):
    buf = BytesIO()
    yield buf
    with self.gateway.writer(rpath) as f:
      f.write(buf.getvalue())
    self.sent.append(rpath)

class TestBackupRun(unittest.TestCase):

  def setUp(self):
    self.gw = MemoryGateway()
    self.transport = PlainTransport(self.gw)

  def backup(self, archives, date, **kw):
    return BackupRun(self.gw, self.transport, date=date, **kw).run(archives)

  def test_first_run(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    B = BytesArchive(name='b', datas=(b'bbb',))
    summary = self.backup([A, B], D1)
    self.assertIs(summary.action, SlotAction.CREATE)
    self.assertEqual(len(self.transport.sent), 2)
    self.assertEqual(
        self.gw.listdir('backups/' + D1),
        sorted(
            [
                'a.tar.gpg',
                'a.tar.' + sha512(b'aaa'),
                'b.tar.gpg',
                'b.tar.' + sha512(b'bbb'),
            ]
        ),
    )
    self.assertEqual([outcome.name for outcome in summary.uploaded], ['a', 'b'])
    self.assertEqual(summary.outcomes[0].nbytes, 3)
    self.assertEqual(summary.removed, [])

  def test_no_compression(self):
    ''' The transport receives exactly the producer's bytes.
    '''
    data = bytes(range(256)) * 1000
    self.backup([BytesArchive(name='a', datas=(data,))], D1)
    self.assertEqual(self.gw.read_bytes(f'backups/{D1}/a.tar.gpg'), data)

  def test_unchanged_rerun_links(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.backup([A], D1)
    self.assertEqual(len(self.transport.sent), 1)
    summary = self.backup([A], D2)
    # no second upload
    self.assertEqual(len(self.transport.sent), 1)
    self.assertEqual(summary.linked[0].linked_from, 'backups/' + D1)
    self.assertIn(
        ('link', f'backups/{D1}/a.tar.gpg', f'backups/{D2}/a.tar.gpg'),
        self.gw.ops,
    )
    # a fresh sidecar in the new slot, and the old slot is gone
    self.assertEqual(self.gw.listdir('backups'), [D2])
    self.assertEqual(
        self.gw.listdir('backups/' + D2),
        ['a.tar.' + sha512(b'aaa'), 'a.tar.gpg'],
    )
    self.assertEqual(self.gw.read_bytes(f'backups/{D2}/a.tar.gpg'), b'aaa')
    # the fingerprint pass does not touch the transport
    self.assertEqual(len(A.reads), 3)

  def test_changed_archive_only_uploaded(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.backup([A, BytesArchive(name='b', datas=(b'bbb',))], D1)
    summary = self.backup([A, BytesArchive(name='b', datas=(b'BBB',))], D2)
    self.assertEqual(
        self.transport.sent,
        [f'backups/{D1}/a.tar.gpg', f'backups/{D1}/b.tar.gpg', f'backups/{D2}/b.tar.gpg'],
    )
    self.assertEqual([outcome.name for outcome in summary.linked], ['a'])
    self.assertEqual([outcome.name for outcome in summary.uploaded], ['b'])
    self.assertNotEqual(summary.outcomes[1].hexdigest, sha512(b'bbb'))
    self.assertEqual(self.gw.read_bytes(f'backups/{D2}/b.tar.gpg'), b'BBB')

  def test_retention(self):
    self.gw.makedirs(f'backups/{D0}')
    self.gw.makedirs(f'backups/{D0}.bak')
    summary = self.backup([BytesArchive(name='a', datas=(b'aaa',))], D1)
    self.assertEqual(self.gw.listdir('backups'), [D1])
    self.assertEqual(summary.removed, [f'backups/{D0}', f'backups/{D0}.bak'])

  def test_same_day_rerun(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.backup([A], D1)
    summary = self.backup([A], D1)
    self.assertIs(summary.action, SlotAction.PRESERVE)
    self.assertEqual(summary.outcomes[0].linked_from, f'backups/{D1}.bak')
    self.assertEqual(summary.removed, [f'backups/{D1}.bak'])
    self.assertEqual(self.gw.listdir('backups'), [D1])
    self.assertEqual(self.gw.read_bytes(f'backups/{D1}/a.tar.gpg'), b'aaa')

  def test_interrupted_rerun(self):
    ''' A destination and backup slot both present:
        the destination is an incomplete run and is discarded.
    '''
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.backup([A], D1)
    self.gw.move(f'backups/{D1}', f'backups/{D1}.bak')
    self.gw.makedirs(f'backups/{D1}')
    with self.gw.writer(f'backups/{D1}/a.tar.gpg') as f:
      f.write(b'partial')
    summary = self.backup([A], D1)
    self.assertIs(summary.action, SlotAction.DISCARD)
    self.assertEqual(summary.outcomes[0].linked_from, f'backups/{D1}.bak')
    self.assertEqual(self.gw.listdir('backups'), [D1])
    self.assertEqual(self.gw.read_bytes(f'backups/{D1}/a.tar.gpg'), b'aaa')

  def test_failure_aborts(self):
    self.gw.makedirs(f'backups/{D0}')
    A = BytesArchive(name='a', datas=(b'aaa',))
    B = BytesArchive(name='b', datas=(b'bbb',), fail=True)
    C = BytesArchive(name='c', datas=(b'ccc',))
    with self.assertRaises(CalledProcessError):
      self.backup([A, B, C], D1)
    # no retention, and nothing recorded for b or c
    self.assertEqual(self.gw.listdir('backups'), [D0, D1])
    self.assertEqual(
        self.gw.listdir('backups/' + D1),
        ['a.tar.' + sha512(b'aaa'), 'a.tar.gpg'],
    )
    self.assertEqual(C.reads, [])

  def test_stale_sidecar_after_partial_removal(self):
    ''' An old slot whose encrypted archive was removed
        but whose sidecar survived does not block later runs.
    '''
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.gw.makedirs(f'backups/{D0}')
    self.gw.touch(f'backups/{D0}/a.tar.' + sha512(b'aaa'))
    summary = self.backup([A], D1)
    self.assertEqual(len(summary.uploaded), 1)
    self.assertEqual(self.gw.read_bytes(f'backups/{D1}/a.tar.gpg'), b'aaa')
    # again with a complete newer slot beside the stale one
    self.gw.makedirs(f'backups/{D0}')
    self.gw.touch(f'backups/{D0}/a.tar.' + sha512(b'aaa'))
    summary = self.backup([A], D2)
    self.assertEqual(summary.linked[0].linked_from, 'backups/' + D1)
    self.assertEqual(self.gw.listdir('backups'), [D2])
    self.assertEqual(self.gw.read_bytes(f'backups/{D2}/a.tar.gpg'), b'aaa')
    self.assertEqual(len(self.transport.sent), 1)

  def test_duplicate_names(self):
    with self.assertRaises(ValueError):
      self.backup(
          [BytesArchive(name='a'), BytesArchive(name='a', datas=(b'x',))], D1
      )
    self.assertEqual(self.gw.ops, [])

  def test_duplicate_filenames(self):
    ''' Distinct archives which would share a remote file are refused.
    '''
    with self.assertRaises(ValueError):
      self.backup(
          [
              BytesArchive(name='x', datas=(b'x',)),
              CommandArchive(name='x.tar', command=('echo', 'x')),
          ],
          D1,
      )
    self.assertEqual(self.gw.ops, [])

  def test_quota_samples(self):
    summary = self.backup([BytesArchive(name='a', datas=(b'aaa',))], D1)
    self.assertEqual(
        summary.quotas, [
            ('begin', '0 files, 0 bytes'),
            ('max', '2 files, 3 bytes'),
            ('end', '2 files, 3 bytes'),
        ]
    )

  def test_changed_during_backup(self):
    ''' The sidecar records the fingerprint of the uploaded bytes.
    '''
    A = BytesArchive(name='a', datas=(b'first', b'second'))
    summary = self.backup([A], D1)
    self.assertEqual(summary.outcomes[0].hexdigest, sha512(b'second'))
    self.assertEqual(
        self.gw.listdir('backups/' + D1),
        ['a.tar.' + sha512(b'second'), 'a.tar.gpg'],
    )

  def test_plan(self):
    self.gw.makedirs(f'backups/{D1}')
    run = BackupRun(self.gw, self.transport, date=D1)
    self.assertIs(run.plan([BytesArchive(name='a')]), SlotAction.PRESERVE)
    self.assertEqual(self.gw.ops, [('makedirs', f'backups/{D1}')])

class TestSinglePass(unittest.TestCase):

  def setUp(self):
    self.gw = MemoryGateway()
    self.transport = PlainTransport(self.gw)

  def backup(self, archives, date):
    return BackupRun(self.gw, self.transport, date=date,
                     single_pass=True).run(archives)

  def test_reads_once(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    summary = self.backup([A], D1)
    self.assertEqual(len(A.reads), 1)
    self.assertTrue(summary.outcomes[0].uploaded)
    self.assertEqual(summary.outcomes[0].hexdigest, sha512(b'aaa'))

  def test_unchanged_replaced_by_link(self):
    A = BytesArchive(name='a', datas=(b'aaa',))
    self.backup([A], D1)
    summary = self.backup([A], D2)
    self.assertEqual(len(A.reads), 2)
    self.assertEqual(len(self.transport.sent), 2)
    self.assertEqual(summary.outcomes[0].linked_from, 'backups/' + D1)
    ops = self.gw.ops
    remove_index = ops.index(('remove', f'backups/{D2}/a.tar.gpg'))
    link_index = ops.index(
        ('link', f'backups/{D1}/a.tar.gpg', f'backups/{D2}/a.tar.gpg')
    )
    self.assertLess(remove_index, link_index)
    self.assertEqual(self.gw.listdir('backups'), [D2])
    self.assertEqual(self.gw.read_bytes(f'backups/{D2}/a.tar.gpg'), b'aaa')

if __name__ == '__main__':
  unittest.main()

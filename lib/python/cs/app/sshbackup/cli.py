#!/usr/bin/env python3

''' The `sshbackup` command line.
'''

from contextlib import contextmanager
from dataclasses import dataclass, field
from getopt import GetoptError
import os
from os.path import (
    basename,
    exists as existspath,
    expanduser,
)
from shutil import copyfileobj
from subprocess import CalledProcessError
import sys
from typing import Optional

from cs.cmdutils import BaseCommand, popopts
from cs.logutils import error, warning
from cs.pfx import Pfx, pfx_call
from cs.upd import print  # pylint: disable=redefined-builtin

from .config import (
    BackupConfig,
    PreconditionError,
    default_config_path,
    load_config,
)
from .dedup import resolve
from .fingerprint import (
    CHUNK_SIZE,
    ENCRYPTED_SUFFIX,
    fingerprint,
    parse_sidecar_name,
)
from .gateway import CommandGateway
from .run import BackupRun, transcribe_bytes
from .transport import GPGTransport, load_passphrase

PUBKEY_DEFAULT = '~/.ssh/id_ed25519.pub'
AUTHORIZED_KEYS = '.ssh/authorized_keys'

def main(argv=None):
  ''' Command line mode.
  '''
  try:
    return SSHBackupCommand(argv).run()
  except (CalledProcessError, OSError, ValueError) as e:
    error("%s", e)
    return 1

class SSHBackupCommand(BaseCommand):
  ''' Encrypted single snapshot backups to a remote host
      accessible only via ssh commands.
  '''

  # pylint: disable=use-dict-literal
  USAGE_KEYWORDS = dict(
      AUTHORIZED_KEYS=AUTHORIZED_KEYS,
      PUBKEY_DEFAULT=PUBKEY_DEFAULT,
  )

  @dataclass
  class Options(BaseCommand.Options):
    ''' Options for `SSHBackupCommand`.
    '''
    config_path: str = field(default_factory=default_config_path)
    remote: Optional[str] = None
    single_pass: bool = False
    raw: bool = False

    # pylint: disable=use-dict-literal
    COMMON_OPT_SPECS = dict(
        **BaseCommand.Options.COMMON_OPT_SPECS,
        c_=(
            'config_path',
            'Configuration file, default from $SSHBACKUP_CONFIG or ~/.sshbackuprc.',
        ),
        R_=(
            'remote',
            'The remote ssh host, overriding the configuration. Empty for local.',
        ),
    )

  @contextmanager
  def run_context(self, **kw):
    ''' Load the configuration as `self.config` if present.
    '''
    with super().run_context(**kw):
      config_path = self.options.config_path
      if existspath(config_path):
        self.config = load_config(config_path)
      else:
        self.config = None
      if self.config is not None and self.options.remote is not None:
        self.config.remote = self.options.remote or None
      yield

  def need_config(self) -> BackupConfig:
    ''' Return the configuration, raising `PreconditionError` if there is none.
    '''
    if self.config is None:
      raise PreconditionError(
          f'missing configuration file {self.options.config_path!r}'
      )
    return self.config

  def settings(self) -> BackupConfig:
    ''' Return the configuration or the default settings if there is none.
    '''
    if self.config is not None:
      return self.config
    remote = self.options.remote
    return BackupConfig(remote=remote or None)

  def gateway(self, config: BackupConfig) -> CommandGateway:
    ''' The `CommandGateway` for `config`.
    '''
    options = self.options
    return CommandGateway(
        config.remote,
        ssh_exe=options.ssh_exe,
        cwd=config.local_root if config.remote is None else None,
        quota_argv=config.quota_argv,
        trace=options.verbose,
    )

  def transport(self, config: BackupConfig, gateway) -> GPGTransport:
    ''' The `GPGTransport` for `config`, loading the passphrase.
    '''
    return GPGTransport(
        gateway,
        load_passphrase(config.passphrase_file),
        gpg_exe=config.gpg_exe,
        cipher_algo=config.cipher_algo,
    )

  def pick_archives(self, config: BackupConfig, names):
    ''' Return the configured archives named in `names`, or all if empty.
    '''
    archives = config.archives()
    if not names:
      return archives
    by_name = {archive.name: archive for archive in archives}
    unknown = [name for name in names if name not in by_name]
    if unknown:
      raise GetoptError(f'unknown archive names: {", ".join(unknown)}')
    return [by_name[name] for name in names]

  @popopts(
      _1=(
          'single_pass',
          ''' Single pass mode: read each archive once,
              uploading it and replacing it with a link if unchanged.''',
      ),
  )
  def cmd_backup(self, argv):
    ''' Usage: {cmd} [-1]
          Back up all the configured archives into today's slot
          and then remove all other slots.
          With -n (dry run), check the configuration and report the plan.
    '''
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    options = self.options
    config = self.need_config()
    archives = config.archives()
    gateway = self.gateway(config)
    transport = self.transport(config, gateway)
    backup = BackupRun(
        gateway,
        transport,
        root=config.root,
        hashname=config.hashname,
        single_pass=options.single_pass,
    )
    if options.dry_run:
      action = backup.plan(archives)
      print(f'{backup.dest}: {action.value}')
      for archive in archives:
        print(' ', archive.filename, ' '.join(archive.argv()))
      return 0
    summary = backup.run(archives)
    for outcome in summary.outcomes:
      if outcome.uploaded:
        print(
            f'{outcome.filename}: uploaded {transcribe_bytes(outcome.nbytes)}'
        )
      else:
        print(
            f'{outcome.filename}: linked {transcribe_bytes(outcome.nbytes)}'
            f' from {outcome.linked_from}'
        )
    for rpath in summary.removed:
      print(f'removed {rpath}')
    if summary.quotas:
      print("Quotas", '/'.join(label for label, _ in summary.quotas) + ':')
      for _, report in summary.quotas:
        print(report)
        print()
    return 0

  def cmd_check(self, argv):
    ''' Usage: {cmd}
          Check the configuration, the archive sources and the passphrase file
          without contacting the remote host.
    '''
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    config = self.need_config()
    archives = config.archives()
    load_passphrase(config.passphrase_file)
    print(f'{len(archives)} archives:')
    for archive in archives:
      print(' ', archive.filename)
    return 0

  def cmd_fingerprint(self, argv):
    ''' Usage: {cmd} [names...]
          Print the fingerprints of the named archives, default all of them.
    '''
    config = self.need_config()
    for archive in self.pick_archives(config, argv):
      hexdigest, nbytes = fingerprint(archive, config.hashname)
      print(hexdigest, transcribe_bytes(nbytes), archive.filename)
    return 0

  def cmd_lookup(self, argv):
    ''' Usage: {cmd} name
          Fingerprint the named archive and report the remote slot
          holding a matching copy, if any.
    '''
    if not argv:
      raise GetoptError('missing name')
    name = argv.pop(0)
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    config = self.need_config()
    archive, = self.pick_archives(config, [name])
    hexdigest, _ = fingerprint(archive, config.hashname)
    gateway = self.gateway(config)
    match = (
        resolve(gateway, config.root, archive.filename, hexdigest)
        if gateway.exists(config.root) else None
    )
    if match is None:
      print(archive.filename, hexdigest, 'not found')
      return 1
    print(archive.filename, hexdigest, match.slot)
    return 0

  def cmd_inspect(self, argv):
    ''' Usage: {cmd}
          List everything under the remote backup root.
          Fingerprint sidecars are annotated with their archive filename.
    '''
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    config = self.settings()
    for rpath in self.gateway(config).walk(config.root):
      parsed = parse_sidecar_name(basename(rpath))
      if parsed is None:
        print(rpath)
      else:
        filename, _ = parsed
        print(f'{rpath}: fingerprint of {filename}')
    return 0

  def cmd_quota(self, argv):
    ''' Usage: {cmd}
          Report the remote quota.
    '''
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    report = self.gateway(self.settings()).quota()
    if report is None:
      warning("no quota command configured")
      return 1
    print(report)
    return 0

  @popopts(r=('raw', 'Raw mode: download the encrypted file without decryption.'))
  def cmd_download(self, argv):
    ''' Usage: {cmd} [-r] filename [localpath]
          Find the remote file named filename under the backup root
          and download it to localpath.
          Files ending in .gpg are decrypted unless -r is specified.
          The default localpath is the filename, less .gpg if decrypting.
    '''
    if not argv:
      raise GetoptError('missing filename')
    filename = argv.pop(0)
    if '/' in filename:
      raise GetoptError(f'filename may not contain a slash: {filename!r}')
    decrypt = filename.endswith(ENCRYPTED_SUFFIX) and not self.options.raw
    if argv:
      localpath = argv.pop(0)
    elif decrypt:
      localpath = filename[:-len(ENCRYPTED_SUFFIX)]
    else:
      localpath = filename
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    config = self.settings()
    gateway = self.gateway(config)
    with Pfx("download %s", filename):
      rpaths = sorted(gateway.find(config.root, filename))
      if not rpaths:
        error("not found under %s", config.root)
        return 1
      rpath = rpaths[0]
      if len(rpaths) > 1:
        warning("%d matches, using %s", len(rpaths), rpath)
      if existspath(localpath):
        error("local path already exists: %r", localpath)
        return 1
      if self.options.dry_run:
        print(f'{rpath} -> {localpath}{"" if decrypt else " (raw)"}')
        return 0
      transport = self.transport(config, gateway) if decrypt else None
      with pfx_call(open, localpath, 'xb') as f:
        try:
          if decrypt:
            transport.receive(rpath, f)
          else:
            with gateway.reader(rpath) as rf:
              copyfileobj(rf, f, CHUNK_SIZE)
        except BaseException:
          # do not leave a partial download behind
          f.close()
          os.remove(localpath)
          raise
    print(f'{rpath} -> {localpath}')
    return 0

  def cmd_setup(self, argv):
    ''' Usage: {cmd} [pubkey]
          Install the ssh public key file pubkey, default {PUBKEY_DEFAULT},
          as the remote {AUTHORIZED_KEYS}, replacing what is there.
    '''
    pubkey_path = expanduser(argv.pop(0) if argv else PUBKEY_DEFAULT)
    if argv:
      raise GetoptError(f'extra arguments: {argv!r}')
    config = self.settings()
    if config.remote is None:
      raise GetoptError('setup requires a remote host (-R or the configuration)')
    with Pfx(pubkey_path):
      if not basename(pubkey_path).endswith('.pub'):
        raise GetoptError('not a public key file, expected a .pub suffix')
      with pfx_call(open, pubkey_path, 'rb') as f:
        pubkey = f.read()
    if self.options.dry_run:
      print(f'{pubkey_path} -> {config.remote}:{AUTHORIZED_KEYS}')
      return 0
    gateway = self.gateway(config)
    gateway.makedirs('.ssh')
    with gateway.writer(AUTHORIZED_KEYS) as rf:
      rf.write(pubkey)
    print(f'{pubkey_path} -> {config.remote}:{AUTHORIZED_KEYS}')
    return 0

if __name__ == '__main__':
  sys.exit(main(sys.argv))

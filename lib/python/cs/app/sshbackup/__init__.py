#!/usr/bin/env python3

''' Encrypted single snapshot backups to a remote host
    which can only be reached by running commands over `ssh`,
    for example an `rsync.net` account.

    The local data are divided into named archives,
    typically one per directory tree.
    Each run streams each archive as an uncompressed `tar`,
    encrypts it with `gpg` and writes it remotely with `dd`,
    without staging anything on local or remote disk:

        backups/2024-06-01/photos.tar.gpg
        backups/2024-06-01/photos.tar.3f9a...

    The zero length file beside the encrypted archive
    records the content hash of the unencrypted archive.
    If a later run finds the same hash anywhere under `backups`
    the existing encrypted archive is hard linked into the new
    snapshot instead of being uploaded again.

    Only one snapshot is kept.
    Older snapshots are removed only after a run completes,
    and a rerun on the same day preserves the previous same day
    snapshot in a `.bak` slot until it completes.
    There is no history and no protection against corruption
    which is already present in the local files.

    Example use:

        sshbackup setup              # install ~/.ssh/id_ed25519.pub remotely
        sshbackup check              # check the configuration and passphrase
        sshbackup -n backup          # report what a backup would do
        sshbackup backup             # make today's snapshot
        sshbackup download photos.tar.gpg
'''

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: System :: Archiving :: Backup",
    ],
    'entry_points': {
        'console_scripts': {
            'sshbackup': 'cs.app.sshbackup.cli:main',
        },
    },
    'install_requires': [
        'cs.buffer',
        'cs.cmdutils>=20240211',
        'cs.configutils',
        'cs.hashutils',
        'cs.logutils',
        'cs.pfx',
        'cs.psutils',
        'cs.threads',
        'cs.units',
        'cs.upd',
        'icontract',
        'typeguard',
    ],
}

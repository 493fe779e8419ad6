#!/usr/bin/env python3
"""Development runner: same as the installed secure-backup command"""
import os

from securebackup.cli import main

if __name__ == '__main__':
    # Use development config for local runs unless told otherwise
    os.environ.setdefault('SECURE_BACKUP_ENV', 'development')

    main()

"""Event bus — status, log, VFS and ledger notifications for observers."""

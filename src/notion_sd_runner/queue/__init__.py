"""Queue consumption and job lifecycle for the Notion-backed runner.

One worker, one item at a time: fetch the highest-priority ``On queue``
record, decode it into a typed command, claim it as ``In progress``, run the
command as a local subprocess, and write ``Done`` or ``Failed`` back.

All durable state lives in the Notion database. The ``In progress`` marker is
advisory: if more than one worker is ever started against the same database,
the fetch/claim pair has to become a conditional update first.
"""

"""Council job engine.

A job is a directory: ``job.json`` and ``prompt.txt`` at the top, then one
``members/<safe-name>/`` folder per member holding ``status.json``,
``prompt.txt``, ``output.txt`` and ``error.txt``. Each status file has a single
writer (its worker process) and every write is an atomic replace, so readers
never lock and simply treat missing or half-written files as absent.
"""

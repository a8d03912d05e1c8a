"""
Pipelines built on :class:`~loris_ingest.core.engine.SyncEngine`.

Each module contributes a unit source, a handler and a ``run_*`` entry point
returning the list of :class:`~loris_ingest.core.report.RunReport` objects
produced by the run:

* :mod:`.clinical` – instrument installation and clinical data upload.
* :mod:`.dicom` – DICOM study import.
* :mod:`.imaging` – BIDS imaging sessions → ``bidsimport``.
* :mod:`.participants` – BIDS ``participants.tsv`` → LORIS candidates.
* :mod:`.reidentify` – BIDS dataset copy with external IDs replaced by PSCIDs.
"""

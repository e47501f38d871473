"""Formal run lifecycle invariants.

This file documents what each phase of a run MUST guarantee. Use it as a
reviewer anchor and system reference.
"""

RUN_INVARIANTS = {
    "mapping": [
        "A file-sourced input is finalized only when every ownerMappings entry has a stepIO entry",
        "isMapped is False whenever any step fails the mapping check",
        "A failed resolution returns no partial step list",
    ],

    "queued": [
        "Run record is persisted locally before any resource is acquired",
        "pipelineSnapshot carries the resolved steps and never changes afterwards",
    ],

    "downloading-images": [
        "Image list is deduplicated and order preserving",
        "A failed pull never reaches the execution engine and never prunes",
    ],

    "running": [
        "Every engine state update is relayed, in emission order, for this run id",
        "Only one process holds the lease for a (consortium, run) pair",
    ],

    "terminal": [
        "Exactly one of results / error is set, with an end date",
        "Staged input files for the run id no longer exist",
        "provenance.json is written at most once per run id, and only on success",
        "Only local runs emit a completion event; joined runs learn it remotely",
    ],
}

# Statuses each phase may move a run to
ALLOWED_TRANSITIONS = {
    "queued": ("downloading-images", "error"),
    "downloading-images": ("running", "error"),
    "running": ("complete", "error", "stopped", "suspended"),
    "suspended": ("running", "error", "stopped"),
    "complete": (),
    "error": (),
    "stopped": (),
}

"""Diff mode: two git revisions snapshotted into parallel read-only maps."""

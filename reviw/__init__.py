"""reviw: local review server for CSV/TSV, diffs and text, with video timelines."""

__version__ = "0.3.0"

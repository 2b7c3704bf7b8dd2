"""ngs_launcher — at-most-once Slurm submission for new sequencing data.

Scans the sequencer output directory for completed runs (demultiplexing)
and the concordance sample-sheet directory for new sample sheets
(array-vs-NGS concordance checks), and submits one Slurm job per new unit.
Progress is persisted only as sentinel files next to the data, so the
launcher can run from cron, crash, and be re-run safely.

Typical usage::

    from ngs_launcher.config import load_config
    from ngs_launcher.lock import acquire_lock
    from ngs_launcher.pipeline import run_concordance

    config = load_config("/etc/ngs_launcher", group="umcg-gd")
    with acquire_lock(config.lock_file("concordance")):
        results = run_concordance(config)
"""

__version__ = "0.1.0"

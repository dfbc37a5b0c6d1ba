"""
Datapump - A continuous loader for replicated change data.

Polls the control file written by a replication tool, copies the data
files it lists into a staging directory, and promotes them into a
queryable target table through DuckDB or BigQuery.

Usage:
    datapump [CONFIG_FILE]
    python -m datapump.main [CONFIG_FILE]

Environment Variables:
    DATAPUMP_CONFIG: Configuration file used when none is given
        (default: /etc/datapump/datapump.yaml)
    ENV: Environment name attached to metrics (default: dev)
"""

__version__ = "0.1.0"

"""
Tests for the batch loop and the process entry point.
"""

import threading
from unittest.mock import Mock, patch

import pytest
import yaml
from structlog.testing import capture_logs

from datapump import main as main_module
from datapump.config import Config, MetricsConfig
from datapump.control import ControlFile, ControlFileSource
from datapump.engine import Query
from datapump.errors import BatchFailure
from datapump.loader import RunState, bootstrap
from datapump.main import main, run_iteration, run_loop
from datapump.metrics import MetricsClient


def make_state(control_source, fake_fs, fake_local, fake_engine, policy="crash"):
    return RunState(
        local=fake_local,
        dfs=fake_fs,
        engine=fake_engine,
        staging_directory="/stage/db/tbl",
        create_staging_table=Query("CREATE VIEW s", fake_engine),
        drop_staging_table=Query("DROP VIEW IF EXISTS s", fake_engine),
        insert_into=Query("INSERT INTO t SELECT * FROM s", fake_engine),
        create_target_table=Query("CREATE TABLE t", fake_engine),
        control_source=control_source,
        seconds_between_batches=1,
        max_seconds_between_batches=600,
        on_batch_failure=policy,
    )


def pace_for(iterations):
    """pace_fn replacement that asks the loop to stop after N calls."""
    pace_fn = Mock(side_effect=[False] * (iterations - 1) + [True])
    return pace_fn


@pytest.fixture
def metrics():
    return MetricsClient(MetricsConfig())


@pytest.fixture
def control_file(fake_local):
    return ControlFile(path="/ogg/orders.ctl.1", data_files=["/ogg/a.csv"], fs=fake_local)


class TestRunLoop:

    def test_empty_cursor_skips_batch_but_paces(self, fake_fs, fake_local, fake_engine, metrics):
        source = Mock()
        source.next.return_value = None
        batch_factory = Mock()
        pace_fn = pace_for(3)

        with capture_logs() as logs:
            run_loop(
                make_state(source, fake_fs, fake_local, fake_engine),
                threading.Event(),
                metrics,
                batch_factory=batch_factory,
                pace_fn=pace_fn,
            )

        batch_factory.assert_not_called()
        assert pace_fn.call_count == 3
        assert source.next.call_count == 3
        assert [e["event"] for e in logs].count("no_data_to_process") == 3

    def test_batch_runs_then_cleans_up(self, fake_fs, fake_local, fake_engine, metrics, control_file):
        source = Mock()
        source.next.side_effect = [control_file, None]
        batch = Mock(duration_seconds=0.5)
        batch_factory = Mock(return_value=batch)
        state = make_state(source, fake_fs, fake_local, fake_engine)

        run_loop(state, threading.Event(), metrics, batch_factory=batch_factory, pace_fn=pace_for(2))

        batch_factory.assert_called_once_with(
            fake_local,
            fake_fs,
            control_file,
            "/stage/db/tbl",
            state.drop_staging_table,
            state.create_staging_table,
            state.insert_into,
        )
        assert batch.method_calls[:2] == [("run", (), {}), ("cleanup", (), {})]

    def test_stop_before_first_iteration(self, fake_fs, fake_local, fake_engine, metrics):
        source = Mock()
        stop = threading.Event()
        stop.set()

        run_loop(make_state(source, fake_fs, fake_local, fake_engine), stop, metrics, pace_fn=Mock())

        source.next.assert_not_called()

    def test_crash_policy_propagates_batch_failure(
        self, fake_fs, fake_local, fake_engine, metrics, control_file
    ):
        source = Mock()
        source.next.return_value = control_file
        batch = Mock()
        batch.run.side_effect = BatchFailure("insert failed", control_file=control_file.path)
        pace_fn = Mock(return_value=False)

        with pytest.raises(BatchFailure, match="insert failed"):
            run_loop(
                make_state(source, fake_fs, fake_local, fake_engine, policy="crash"),
                threading.Event(),
                metrics,
                batch_factory=Mock(return_value=batch),
                pace_fn=pace_fn,
            )

        batch.cleanup.assert_not_called()
        pace_fn.assert_not_called()

    def test_continue_policy_cleans_up_and_keeps_polling(
        self, fake_fs, fake_local, fake_engine, metrics, control_file
    ):
        source = Mock()
        source.next.side_effect = [control_file, None]
        batch = Mock()
        batch.run.side_effect = BatchFailure("insert failed", control_file=control_file.path)
        pace_fn = pace_for(2)

        with capture_logs() as logs:
            run_loop(
                make_state(source, fake_fs, fake_local, fake_engine, policy="continue"),
                threading.Event(),
                metrics,
                batch_factory=Mock(return_value=batch),
                pace_fn=pace_fn,
            )

        batch.cleanup.assert_called_once_with()
        assert pace_fn.call_count == 2
        assert any(e["event"] == "batch_failed" and e["policy"] == "continue" for e in logs)

    def test_cursor_failure_is_a_batch_failure(self, fake_fs, fake_local, fake_engine, metrics):
        source = Mock()
        source.next.side_effect = OSError("control file unreadable")

        with pytest.raises(BatchFailure, match="control file check failed"):
            run_iteration(make_state(source, fake_fs, fake_local, fake_engine), metrics)


class TestEndToEnd:
    """Fresh staging path, one control file, then nothing."""

    def test_trace(self, raw_config, fake_fs, fake_local, fake_engine, metrics):
        state = bootstrap(Config.from_dict(raw_config), dfs=fake_fs, local=fake_local, engine=fake_engine)
        assert state.staging_directory == "hdfs://namenode:8020/stage/db/tbl"
        assert not fake_fs.exists("/stage/db/tbl")
        assert fake_engine.executed == [state.create_target_table.text]

        control_path = raw_config["control_file"]
        ogg_dir = control_path.rsplit("/", 1)[0]
        fake_local.write_file(f"{ogg_dir}/orders_0001.csv", b"1,alice,10.50\n")
        fake_local.write_file(control_path, b"orders_0001.csv\n")

        pace_fn = pace_for(2)
        with capture_logs() as logs:
            run_loop(state, threading.Event(), metrics, pace_fn=pace_fn)

        events = [e["event"] for e in logs]
        assert events.index("new_data_to_process") < events.index("batch_loaded")
        assert events.index("batch_cleaned_up") < events.index("no_data_to_process")
        assert pace_fn.call_count == 2

        assert fake_engine.executed[1:] == [
            state.drop_staging_table.text,
            state.create_staging_table.text,
            state.insert_into.text,
            state.drop_staging_table.text,
        ]
        # Control file and data consumed, staging directory gone again
        assert fake_local.files == {}
        assert not fake_fs.exists("/stage/db/tbl")


class TestStagingCleanupFailure:

    def test_loaded_batch_is_not_inserted_again(self, fake_fs, fake_local, fake_engine, metrics):
        fake_local.write_file("/ogg/orders_0001.csv", b"1,alice,10.50\n")
        fake_local.write_file("/ogg/orders.ctl", b"orders_0001.csv\n")
        state = make_state(
            ControlFileSource(fake_local, "/ogg/orders.ctl"),
            fake_fs,
            fake_local,
            fake_engine,
            policy="continue",
        )
        fake_fs.fail_delete = True

        with capture_logs() as logs:
            run_loop(state, threading.Event(), metrics, pace_fn=pace_for(3))

        inserts = [sql for sql in fake_engine.executed if sql == state.insert_into.text]
        assert len(inserts) == 1
        assert fake_local.files == {}
        failures = [e for e in logs if e["event"] == "batch_failed"]
        assert len(failures) == 1
        assert "could not be deleted" in failures[0]["error"]

    def test_stuck_leftover_staging_fails_next_batch_without_loading(
        self, fake_fs, fake_local, fake_engine, metrics
    ):
        fake_fs.write_file("/stage/db/tbl/00000_orders_0001.csv", b"1,alice,10.50\n")
        fake_fs.fail_delete = True
        fake_local.write_file("/ogg/orders_0002.csv", b"2,bob,3.25\n")
        fake_local.write_file("/ogg/orders.ctl", b"orders_0002.csv\n")
        state = make_state(
            ControlFileSource(fake_local, "/ogg/orders.ctl"),
            fake_fs,
            fake_local,
            fake_engine,
            policy="continue",
        )

        run_loop(state, threading.Event(), metrics, pace_fn=pace_for(2))

        assert state.insert_into.text not in fake_engine.executed
        failed = [p for p in fake_local.files if p.endswith(".failed")]
        assert len(failed) == 1
        assert "/ogg/orders_0002.csv" in fake_local.files


class TestMain:

    @pytest.fixture(autouse=True)
    def no_signal_handlers(self):
        with patch.object(main_module.signal, "signal"):
            yield

    def test_missing_config_exits_non_zero(self, tmp_path):
        assert main([str(tmp_path / "nope.yaml")]) == 1

    def test_startup_failure_is_logged(self, tmp_path, raw_config):
        raw_config["staging_directory"] = str(tmp_path / "stage" / "{schema}" / "{table}")
        (tmp_path / "stage" / "db" / "tbl").mkdir(parents=True)
        config_path = tmp_path / "datapump.yaml"
        config_path.write_text(yaml.safe_dump(raw_config))

        with capture_logs() as logs:
            assert main([str(config_path)]) == 1

        failure = [e for e in logs if e["event"] == "loader_startup_failed"]
        assert failure and failure[0]["error_type"] == "StagingConflict"

    def test_clean_shutdown_exits_zero(self, tmp_path, raw_config):
        raw_config["staging_directory"] = str(tmp_path / "stage" / "{schema}" / "{table}")
        raw_config["engine"] = {"backend": "duckdb", "database": ":memory:"}
        config_path = tmp_path / "datapump.yaml"
        config_path.write_text(yaml.safe_dump(raw_config))

        with patch.object(main_module, "run_loop") as run_loop_mock:
            assert main([str(config_path)]) == 0

        state = run_loop_mock.call_args.args[0]
        assert isinstance(state.control_source, ControlFileSource)
        assert state.staging_directory == str((tmp_path / "stage" / "db" / "tbl").resolve())

    def test_loop_failure_exits_non_zero(self, tmp_path, raw_config):
        raw_config["staging_directory"] = str(tmp_path / "stage" / "{schema}" / "{table}")
        raw_config["engine"] = {"backend": "duckdb", "database": ":memory:"}
        config_path = tmp_path / "datapump.yaml"
        config_path.write_text(yaml.safe_dump(raw_config))

        with patch.object(main_module, "run_loop", side_effect=BatchFailure("boom")):
            assert main([str(config_path)]) == 1

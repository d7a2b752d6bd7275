"""
Tests for the coldcaller-backup command.
"""

from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from src.backup_vault import cli
from src.shared.errors import ManifestMissingError, TransientInfrastructureError


class TestBuildOptions:
    """Test flag translation."""

    def test_defaults(self):
        """Test a full backup in both formats with cleanup."""
        assert cli.build_options(False, False, False, False) == {
            "backup_type": "full",
            "formats": ["sql", "json"],
            "skip_cleanup": False,
        }

    def test_flags(self):
        """Test incremental, single format and no cleanup."""
        options = cli.build_options(True, False, True, True)

        assert options["backup_type"] == "incremental"
        assert options["formats"] == ["json"]
        assert options["skip_cleanup"] is True

    def test_sql_only_wins(self):
        """Test that --sql-only takes precedence over --json-only."""
        assert cli.build_options(False, True, True, False)["formats"] == ["sql"]


class TestBackupCommand:
    """Test the click command."""

    def test_success(self):
        """Test that a successful run exits 0 and prints the result."""
        run = AsyncMock(return_value={"success": True, "files": ["a.sql.gz"]})
        with patch.object(cli, "run_backup", run):
            result = CliRunner().invoke(cli.backup, ["--sql-only", "--no-cleanup"])

        assert result.exit_code == 0
        assert '"success": true' in result.output
        run.assert_awaited_once_with({"backup_type": "full", "formats": ["sql"], "skip_cleanup": True})

    def test_failure_exits_1(self):
        """Test that a failed run exits with status 1."""
        run = AsyncMock(side_effect=TransientInfrastructureError("connection refused", attempts=5))
        with patch.object(cli, "run_backup", run):
            result = CliRunner().invoke(cli.backup, [])

        assert result.exit_code == 1
        assert "connection refused" in result.output

    def test_verify(self):
        """Test verifying an existing manifest."""
        report = {"manifest": "backup_x.meta.json", "verified": ["a.sql.gz", "a.json.gz"]}
        with patch.object(cli, "run_verify", return_value=report) as verify:
            result = CliRunner().invoke(cli.backup, ["--verify", "backup_x.meta.json"])

        assert result.exit_code == 0
        assert "Verified 2 files" in result.output
        verify.assert_called_once_with("backup_x.meta.json")

    def test_verify_missing_manifest(self):
        """Test that a missing manifest exits with status 1."""
        with patch.object(cli, "run_verify", side_effect=ManifestMissingError("not found")):
            result = CliRunner().invoke(cli.backup, ["--verify", "missing.meta.json"])

        assert result.exit_code == 1


class TestRunBackup:
    """Test the connect, back up, close sequence."""

    async def test_closes_database(self, db, backup_settings):
        """Test that the database is closed after the run."""
        from src.shared.config import Settings

        settings = Settings()
        settings.backup = backup_settings

        result = await cli.run_backup(
            {"backup_type": "full", "formats": ["sql"], "skip_cleanup": True},
            settings=settings,
            database=db,
        )

        assert result["success"] is True
        assert len(result["files"]) == 2
        assert not db.is_connected

    async def test_closes_database_on_failure(self, backup_settings):
        """Test that the database is closed when connecting fails."""
        from src.shared.config import Settings

        settings = Settings()
        settings.backup = backup_settings
        database = AsyncMock()
        database.connect_with_retry.side_effect = TransientInfrastructureError("refused")

        try:
            await cli.run_backup({"formats": ["sql"]}, settings=settings, database=database)
        except TransientInfrastructureError:
            pass

        database.close.assert_awaited_once()

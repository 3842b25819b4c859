"""
CLI command tests (flask users / flask series).
"""

from orseries.models import IssuedNumber, NumberSeries, User


def _invoke(app, *args):
    result = app.test_cli_runner().invoke(args=list(args))
    assert result.exception is None, result.output
    return result.output


class TestSeriesCommands:

    def test_issue_and_void_flow(self, app, db_session):
        out = _invoke(app, "users", "create", "--username", "cli_cashier", "--name", "CLI Cashier")
        assert "PASS Created user" in out
        user = db_session.query(User).filter_by(username="cli_cashier").one()

        out = _invoke(
            app, "series", "create",
            "--name", "CLI Series", "--prefix", "CR",
            "--start", "1", "--end", "1000",
            "--from", "2025-01-01", "--activate",
        )
        assert "PASS Created series: CLI Series" in out
        series = db_session.query(NumberSeries).filter_by(series_name="CLI Series").one()
        assert series.is_active is True

        out = _invoke(app, "series", "allocate", "--user-id", str(user.id), "--date", "2025-10-05")
        assert "PASS CR0000000001" in out
        issued = db_session.query(IssuedNumber).filter_by(series_id=series.id).one()

        out = _invoke(app, "series", "void", str(issued.id), "--user-id", str(user.id), "--reason", "Printer jam")
        assert "voided" in out

        out = _invoke(app, "series", "stats", str(series.id))
        assert "voided_count" in out

        out = _invoke(app, "series", "issued", "--series-id", str(series.id))
        assert "1 issued number(s)" in out

    def test_failures_are_reported(self, app, db_session, series, cashier_a):
        _invoke(app, "series", "deactivate", str(series.id))

        out = _invoke(app, "series", "allocate", "--user-id", str(cashier_a.id), "--series-id", str(series.id))
        assert "FAIL SeriesInactiveError" in out

        out = _invoke(app, "series", "void", "999999", "--user-id", str(cashier_a.id), "--reason", "x")
        assert "FAIL IssuedNumberNotFoundError" in out

    def test_set_offset(self, app, db_session, series, cashier_a):
        out = _invoke(app, "series", "set-offset", str(series.id), "--user-id", str(cashier_a.id), "--offset", "500000")
        assert "now starts at 500001" in out

        out = _invoke(app, "series", "counters", str(series.id))
        assert "500001" in out

    def test_list(self, app, series):
        out = _invoke(app, "series", "list")
        assert "2025 Main" in out

    def test_check_or(self, app, series, cashier_a):
        out = _invoke(app, "series", "allocate", "--user-id", str(cashier_a.id), "--series-id", str(series.id),
                      "--date", "2025-10-05", "--manual")
        assert "PASS CR0000000001" in out

        assert "FAIL CR0000000001 was already issued" in _invoke(app, "series", "check-or", "CR0000000001")
        assert "PASS CR0000000002 is available" in _invoke(app, "series", "check-or", "CR0000000002")

from datetime import date, timedelta

from sqlalchemy.orm import sessionmaker

from backend import update_fee_aging as script
from backend.school_module.models import FeeDue


def test_script_refreshes_overdue_days(db, engine, factory, monkeypatch, capsys):
    due = factory.due(factory.student(factory.branch()), due_date=date(2026, 10, 18) - timedelta(days=33))
    monkeypatch.setattr(script, "SessionLocal", sessionmaker(bind=engine, future=True))

    assert script.main(["update_fee_aging.py", "2026-10-18"]) == 0

    db.expire_all()
    assert db.get(FeeDue, due.id).overdue_days == 33
    assert "Updated aging for 1 fee dues." in capsys.readouterr().out

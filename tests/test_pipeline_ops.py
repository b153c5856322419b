import json

import pandas as pd
import pytest

from batstats.checkin import parse_checkin
from batstats.drain import Bucket
from batstats.drain import DrainReading
from batstats.ledger import EnergyLedger
from batstats.ledger import MODE_CHECKIN
from batstats.pipeline_ops import frame_to_readings
from batstats.pipeline_ops import main
from batstats.pipeline_ops import readings_to_frame
from batstats.pipeline_ops import replay_readings
from batstats.pipeline_ops import snapshot_to_frames
from batstats.pipeline_ops import summarize_drain
from batstats.pipeline_ops import write_drain_report
from batstats.pipeline_ops import write_ledger_csv
from batstats.pipeline_ops import write_snapshot_outputs


CHECKIN = "\n".join(
    [
        "9,0,i,uid,10123,com.example.app",
        "9,0,l,bt,0,7200000,3600000",
        "9,10123,l,pwi,uid,12.5",
        "9,10123,l,wl,tag,0,f,0,100,p,2",
        "9,0,l,sgt,10,20,30,20,20",
        "9,0,l,ble,1,2,3,0.5",
    ]
)


def _readings() -> list[DrainReading]:
    t0 = 1_700_000_000_000
    return [
        DrainReading(t0, 80, 3000.0, -400, True, False),
        DrainReading(t0 + 1_800_000, 79, 2900.0, -400, True, False),
        DrainReading(t0 + 3_600_000, 79, 2880.0, -30, False, False, deep_sleep=True),
        DrainReading(t0 + 5_400_000, 80, 2950.0, 900, False, True),
    ]


def test_snapshot_to_frames_skips_empty_sections():
    frames = snapshot_to_frames(parse_checkin(CHECKIN))
    assert set(frames) == {"apps", "wakelocks", "signal_strength"}
    assert frames["apps"].loc[0, "package_name"] == "com.example.app"
    assert frames["wakelocks"].loc[0, "type"] == "partial"


def test_write_snapshot_outputs(tmp_path):
    written = write_snapshot_outputs(parse_checkin(CHECKIN, captured_at=12.0), tmp_path)
    names = {p.name for p in written}
    assert {"checkin_summary.json", "apps.csv", "wakelocks.csv", "signal_strength.csv"} == names
    summary = json.loads((tmp_path / "checkin_summary.json").read_text(encoding="utf-8"))
    assert summary["captured_at"] == 12.0
    assert summary["battery_realtime_ms"] == 7200000
    assert summary["bluetooth"]["power_mah"] == 0.5
    assert summary["counts"]["apps"] == 1


def test_readings_frame_round_trip_through_csv(tmp_path):
    readings = _readings()
    p = tmp_path / "r.csv"
    readings_to_frame(readings).to_csv(p, index=False)
    assert frame_to_readings(pd.read_csv(p)) == readings


def test_frame_to_readings_tolerates_text_flags_and_gaps():
    df = pd.DataFrame(
        {
            "timestamp_ms": [1000, None, 3000],
            "battery_mah": [100.0, 99.0, 98.0],
            "screen_on": ["true", "false", "0"],
            "charging": ["no", "no", "yes"],
        }
    )
    out = frame_to_readings(df)
    assert len(out) == 2
    assert out[0].screen_on
    assert not out[1].screen_on
    assert out[1].charging
    assert out[0].current_ma == 0


def test_frame_to_readings_requires_columns():
    with pytest.raises(SystemExit):
        frame_to_readings(pd.DataFrame({"timestamp_ms": [1]}))


def test_replay_readings():
    state = replay_readings(_readings())
    assert state.totals(Bucket.SCREEN_ON).energy_mah == pytest.approx(100.0)
    assert state.totals(Bucket.ACTIVE).duration_ms == 1_800_000
    assert state.totals(Bucket.DEEP_SLEEP).energy_mah == pytest.approx(20.0)
    assert state.total_drain_mah == pytest.approx(120.0)
    assert state.session_duration_ms == 5_400_000
    assert state.is_charging


def test_replay_empty():
    assert replay_readings([]).total_drain_mah == 0.0


def test_summarize_drain_excludes_charging_current():
    readings = _readings()
    summary = summarize_drain(replay_readings(readings), readings_to_frame(readings))
    assert summary.readings == 4
    assert summary.discharge_current_ma_p50 == pytest.approx(400.0)
    assert summary.discharge_current_ma_p95 <= 400.0


def test_write_drain_report(tmp_path):
    readings = _readings()
    md, png = write_drain_report(replay_readings(readings), readings_to_frame(readings), tmp_path / "rep")
    assert md.exists() and png.exists()
    text = md.read_text(encoding="utf-8")
    assert "# Drain report" in text
    assert "| deep_sleep |" in text
    assert (tmp_path / "rep" / "buckets.csv").exists()


def test_write_ledger_csv(tmp_path):
    ledger = EnergyLedger()
    ledger.increment(0, "a", MODE_CHECKIN, 1.5)
    out = write_ledger_csv(ledger, tmp_path / "sub" / "ledger.csv")
    df = pd.read_csv(out)
    assert df.loc[0, "identifier"] == "a"
    assert df.loc[0, "energy_mah"] == pytest.approx(1.5)


def test_cli_parse_checkin_and_replay(tmp_path, capsys):
    dump = tmp_path / "checkin.txt"
    dump.write_text(CHECKIN, encoding="utf-8")
    assert main(["parse-checkin", str(dump), "--out-dir", str(tmp_path / "ck")]) == 0
    assert (tmp_path / "ck" / "apps.csv").exists()

    csv_path = tmp_path / "readings.csv"
    readings_to_frame(_readings()).to_csv(csv_path, index=False)
    assert main(["replay-drain", "--csv", str(csv_path), "--out-dir", str(tmp_path / "rp")]) == 0
    assert (tmp_path / "rp" / "summary.md").exists()
    assert "Wrote:" in capsys.readouterr().out

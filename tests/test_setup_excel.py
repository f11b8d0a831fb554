"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

import setup_excel


def test_create_master_workbook_writes_bold_headers(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "data" / "master.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(setup_excel.SHEET_COLUMNS)
    for name, columns in setup_excel.SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[name][1]]
        assert header == list(columns)
        assert all(cell.font.bold for cell in workbook[name][1])


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    target = setup_excel.create_master_workbook(tmp_path / "master.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)
    assert setup_excel.create_master_workbook(target, overwrite=True) == target


def test_main_creates_workbook_named_in_config(config_factory, capsys):
    """The script should resolve DataFile next to config.ini."""

    bundle = config_factory(make_relative=True)
    bundle.workbook_path.unlink()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "missing.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out

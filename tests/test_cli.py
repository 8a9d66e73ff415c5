"""Tests for CLI argument handling."""
import pytest

from regularize.main import collect_cnpjs, parse_args


def test_probe_collects_from_flags_and_file(tmp_path):
    cnpj_file = tmp_path / "lista.txt"
    cnpj_file.write_text("98.765.432/0001-10\nlinha sem cnpj\n12345678000190\n", encoding="utf-8")

    args = parse_args(["--dry-run", "probe", "--cnpj", "12.345.678/0001-90", "--cnpj", "999", "--file", str(cnpj_file)])
    valid, rejected = collect_cnpjs(args)

    assert args.dry_run is True
    assert valid == ["12345678000190", "98765432000110", "12345678000190"]
    assert rejected == ["999"]


def test_status_requires_job_id():
    with pytest.raises(SystemExit):
        parse_args(["status"])
    assert parse_args(["status", "--job-id", "abc"]).job_id == "abc"


def test_command_required():
    with pytest.raises(SystemExit):
        parse_args([])

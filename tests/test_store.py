"""Tests for the SQLite job store."""
from datetime import timedelta

import pytest
from conftest import CNPJ_A, CNPJ_B
from pydantic import ValidationError as PydanticValidationError

from regularize.errors import StoreError
from regularize.parse.models import (
    ClassificationMethod,
    JobStatus,
    ProbeOutcome,
    RegistrationRequest,
    sha256_hex,
    utcnow,
)


def registration_request(**overrides) -> RegistrationRequest:
    data = {
        "cnpj": "12.345.678/0001-90",
        "cpf": "123.456.789-09",
        "nome_mae": "Maria da Silva",
        "data_nascimento": "1980-05-17",
        "email": "Ana@Example.com",
        "celular": "(11) 98765-4321",
        "senha": "segredo123",
        "frase_seguranca": "minha frase secreta",
    }
    data.update(overrides)
    return RegistrationRequest(**data)


async def test_create_and_get_job(store):
    job_id = await store.create_job([CNPJ_A, CNPJ_B, CNPJ_A])
    job = await store.get_job(job_id)

    assert job.status == JobStatus.PENDING
    assert job.total == 3
    assert job.progress == 0
    assert job.cnpjs == [CNPJ_A, CNPJ_B, CNPJ_A]
    assert job.results == []


async def test_update_job_results(store):
    job_id = await store.create_job([CNPJ_A])
    outcome = ProbeOutcome(cnpj=CNPJ_A, classification=True, method=ClassificationMethod.REDIRECT)
    await store.update_job(job_id, status=JobStatus.PROCESSING, progress=1, results=[outcome])

    job = await store.get_job(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.progress == 1
    assert job.results[0].cnpj == CNPJ_A
    assert job.results[0].method == ClassificationMethod.REDIRECT
    assert job.updated_at >= job.created_at


async def test_unknown_job(store):
    assert await store.get_job("missing") is None
    with pytest.raises(StoreError):
        await store.update_job("missing", progress=1)


async def test_list_unfinished_jobs(store):
    pending = await store.create_job([CNPJ_A])
    done = await store.create_job([CNPJ_B])
    await store.update_job(done, status=JobStatus.COMPLETED)

    unfinished = [job.id for job in await store.list_unfinished_jobs()]
    assert unfinished == [pending]


async def test_registration_row_has_no_secrets(store):
    request = registration_request()
    registration_id = await store.create_registration(request.to_row())
    record = await store.get_registration(registration_id)

    assert record.cnpj == "12345678000190"
    assert record.email == "ana@example.com"
    assert record.senha_hash == sha256_hex("segredo123")
    assert record.frase_seguranca_hash == sha256_hex("minha frase secreta")
    assert record.status == JobStatus.PENDING

    public = record.public_dict()
    assert "senha_hash" not in public
    assert "frase_seguranca_hash" not in public
    assert public["cpf"] != "12345678909"


async def test_refresh_metrics(store):
    started = utcnow()
    ok = await store.create_registration(registration_request().to_row())
    await store.update_registration(
        ok, status=JobStatus.COMPLETED, tempo_inicio=started, tempo_fim=started + timedelta(seconds=90)
    )
    failed = await store.create_registration(registration_request().to_row())
    await store.update_registration(failed, status=JobStatus.FAILED)

    await store.refresh_metrics()
    metrics = await store.get_metrics()

    assert metrics["cadastros_hoje"] == 2
    assert metrics["taxa_sucesso"] == 50.0
    assert metrics["tempo_medio"] == 90.0


def test_registration_request_rejects_short_cpf():
    with pytest.raises(PydanticValidationError, match="CPF deve conter 11 dígitos"):
        registration_request(cpf="123.456.789")


async def test_list_registrations_newest_first(store):
    ids = [await store.create_registration(registration_request().to_row()) for _ in range(3)]

    recent = await store.list_registrations(limit=2)

    assert [r.id for r in recent] == [ids[2], ids[1]]
    assert len(await store.list_registrations()) == 3

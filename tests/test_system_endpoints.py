import importlib.util
from pathlib import Path

import sqlalchemy as sa

from clinictabs.observability import normalise_path_for_metrics


def test_health(api_client):
    resp = api_client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['db'] is True


def test_metrics_exposes_tab_write_counter(api_client, seeded, headers):
    api_client.patch(
        f"/api/tab-configs/{seeded['lab']}/visibility",
        json={'isVisible': False, 'scope': 'organization'},
        headers=headers(),
    )
    resp = api_client.get('/metrics')
    assert resp.status_code == 200
    text = resp.text
    assert 'clinictabs_tab_writes_total' in text
    assert 'operation="set_visibility",outcome="rejected"' in text
    assert 'clinictabs_requests_total' in text


def test_trace_id_is_propagated(api_client):
    resp = api_client.get('/health', headers={'X-Trace-Id': 'abc123'})
    assert resp.headers['X-Trace-Id'] == 'abc123'


def test_normalise_path_for_metrics():
    assert normalise_path_for_metrics('/api/tab-configs/42/visibility') == '/api/tab-configs/:param/visibility'
    assert normalise_path_for_metrics('/api/tab-configs/reorder') == '/api/tab-configs/reorder'
    assert normalise_path_for_metrics('') == '/'


def test_bootstrap_script_seeds_database(tmp_path, capsys):
    script = Path(__file__).resolve().parents[1] / 'scripts' / 'bootstrap_database.py'
    spec = importlib.util.spec_from_file_location('bootstrap_database', script)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    url = f"sqlite:///{tmp_path / 'boot.db'}"
    assert module.main(['--database-url', url]) == 0
    assert module.main(['--database-url', url]) == 0

    engine = sa.create_engine(url)
    with engine.connect() as conn:
        assert conn.execute(sa.text('SELECT COUNT(*) FROM tab_configs')).scalar_one() == 12
        assert conn.execute(sa.text('SELECT COUNT(*) FROM tab_presets')).scalar_one() == 3
    engine.dispose()
    assert 'System tabs already seeded' in capsys.readouterr().out

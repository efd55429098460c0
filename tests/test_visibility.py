import pytest

from conftest import ORG_ID, fresh_rows
from clinictabs import tab_configs
from clinictabs.db import TabConfig
from clinictabs.errors import ForbiddenError, InvalidStateError, TabNotFoundError
from clinictabs.resolver import resolve_tabs
from clinictabs.scopes import CallerContext, TabScope
from clinictabs.tab_configs import delete_tab, set_visibility


def _system_row(session, key):
    return fresh_rows(session, key=key, is_system_default=True)[0]


def _snapshot(row):
    return {
        column.name: getattr(row, column.name)
        for column in TabConfig.__table__.columns
    }


def test_hiding_system_tab_creates_user_override(db_session, seeded, clinician):
    before = _snapshot(_system_row(db_session, 'overview'))

    row = set_visibility(db_session, seeded['overview'], False, TabScope.USER, clinician)

    assert row.id != seeded['overview']
    assert row.scope == 'user'
    assert row.user_id == clinician.user_id
    assert row.organization_id is None and row.role_id is None
    assert row.is_visible is False
    assert row.is_system_default is False
    assert row.is_mandatory is False
    assert row.label == 'Overview'
    assert row.settings == {'componentName': 'PatientOverviewTab'}
    assert _snapshot(_system_row(db_session, 'overview')) == before

    keys = [tab.key for tab in resolve_tabs(db_session, clinician)]
    assert 'overview' not in keys
    assert len(keys) == 11


def test_hiding_twice_updates_the_same_override(db_session, seeded, clinician):
    first = set_visibility(db_session, seeded['visits'], False, 'user', clinician)
    second = set_visibility(db_session, seeded['visits'], True, 'user', clinician)

    assert first.id == second.id
    overrides = fresh_rows(db_session, key='visits', scope='user')
    assert len(overrides) == 1
    assert overrides[0].is_visible is True


def test_hiding_last_visible_tab_is_rejected(db_session, seeded, clinician):
    for key, tab_id in seeded.items():
        if key != 'overview':
            set_visibility(db_session, tab_id, False, 'user', clinician)
    count_before = len(fresh_rows(db_session))

    with pytest.raises(InvalidStateError):
        set_visibility(db_session, seeded['overview'], False, 'user', clinician)

    assert len(fresh_rows(db_session)) == count_before
    assert fresh_rows(db_session, key='overview', scope='user') == []
    assert [tab.key for tab in resolve_tabs(db_session, clinician)] == ['overview']


@pytest.mark.parametrize('scope', ['user', 'role', 'organization'])
def test_mandatory_tab_cannot_be_hidden_at_any_scope(db_session, seeded, scope):
    billing = _system_row(db_session, 'billing')
    billing.is_mandatory = True
    db_session.commit()
    admin = CallerContext(organization_id=ORG_ID, user_id=1, role_id=1, role='admin')

    with pytest.raises(ForbiddenError):
        set_visibility(db_session, seeded['billing'], False, scope, admin)

    assert fresh_rows(db_session, key='billing', is_system_default=False) == []


def test_org_mandatory_flag_protects_system_key(db_session, seeded, org_admin, clinician):
    db_session.add(
        TabConfig(key='billing', label='Billing', scope='organization', organization_id=ORG_ID,
                  is_mandatory=True, display_order=70)
    )
    db_session.commit()

    with pytest.raises(ForbiddenError):
        set_visibility(db_session, seeded['billing'], False, 'user', clinician)


def test_org_override_hides_tab_unless_user_override_shows_it(db_session, seeded, org_admin, clinician, colleague):
    set_visibility(db_session, seeded['appointments'], False, 'organization', org_admin)
    set_visibility(db_session, seeded['appointments'], True, 'user', colleague)

    assert 'appointments' not in [tab.key for tab in resolve_tabs(db_session, clinician)]
    assert 'appointments' in [tab.key for tab in resolve_tabs(db_session, colleague)]

    org_rows = fresh_rows(db_session, key='appointments', scope='organization')
    assert len(org_rows) == 1
    assert org_rows[0].organization_id == ORG_ID
    assert org_rows[0].is_visible is False


def test_role_override_applies_to_role_members(db_session, seeded, clinician, colleague):
    set_visibility(db_session, seeded['insurance'], False, 'role', clinician)

    assert 'insurance' not in [tab.key for tab in resolve_tabs(db_session, colleague)]
    outsider = CallerContext(organization_id=ORG_ID, user_id=300, role_id=20, role='frontdesk')
    assert 'insurance' in [tab.key for tab in resolve_tabs(db_session, outsider)]


def test_non_admin_cannot_write_organization_scope(db_session, seeded, clinician):
    with pytest.raises(ForbiddenError):
        set_visibility(db_session, seeded['lab'], False, 'organization', clinician)


def test_system_scope_is_never_writable(db_session, seeded, org_admin):
    with pytest.raises(ForbiddenError):
        set_visibility(db_session, seeded['lab'], False, 'system', org_admin)


def test_role_scope_requires_a_role(db_session, seeded):
    roleless = CallerContext(organization_id=ORG_ID, user_id=400)
    with pytest.raises(ForbiddenError):
        set_visibility(db_session, seeded['lab'], False, 'role', roleless)


def test_unknown_tab_is_not_found(db_session, seeded, clinician):
    with pytest.raises(TabNotFoundError):
        set_visibility(db_session, 9999, False, 'user', clinician)


def test_custom_row_is_updated_in_place_by_owner(db_session, seeded, clinician, colleague):
    custom = TabConfig(key='notes', label='Notes', scope='user', user_id=clinician.user_id,
                       content_type='markdown', display_order=200)
    db_session.add(custom)
    db_session.commit()

    row = set_visibility(db_session, custom.id, False, 'user', clinician)
    assert row.id == custom.id
    assert row.is_visible is False

    with pytest.raises(ForbiddenError):
        set_visibility(db_session, custom.id, True, 'user', colleague)


def test_custom_row_scope_must_match(db_session, seeded, org_admin):
    custom = TabConfig(key='protocols', label='Protocols', scope='organization',
                       organization_id=ORG_ID, display_order=200)
    db_session.add(custom)
    db_session.commit()

    with pytest.raises(ForbiddenError):
        set_visibility(db_session, custom.id, False, 'user', org_admin)


def test_concurrent_shadow_insert_updates_existing_row(db_session, seeded, clinician, monkeypatch):
    db_session.add(
        TabConfig(key='overview', label='Overview', scope='user', user_id=clinician.user_id,
                  is_visible=True, display_order=10)
    )
    db_session.commit()

    original = tab_configs._find_override
    calls = []

    def _racing(session, key, owner_key):
        calls.append(key)
        if len(calls) == 1:
            return None
        return original(session, key, owner_key)

    monkeypatch.setattr(tab_configs, '_find_override', _racing)

    row = set_visibility(db_session, seeded['overview'], False, 'user', clinician)

    assert len(calls) == 2
    overrides = fresh_rows(db_session, key='overview', scope='user')
    assert len(overrides) == 1
    assert overrides[0].id == row.id
    assert overrides[0].is_visible is False



def test_concurrent_shadow_insert_still_runs_guard(db_session, seeded, clinician, monkeypatch):
    for key, tab_id in seeded.items():
        if key != 'overview':
            set_visibility(db_session, tab_id, False, 'user', clinician)
    db_session.add(
        TabConfig(key='overview', label='Overview', scope='user', user_id=clinician.user_id,
                  is_visible=True, display_order=10)
    )
    db_session.commit()

    original = tab_configs._find_override
    calls = []

    def _racing(session, key, owner_key):
        calls.append(key)
        if len(calls) == 1:
            return None
        return original(session, key, owner_key)

    monkeypatch.setattr(tab_configs, '_find_override', _racing)

    with pytest.raises(InvalidStateError):
        set_visibility(db_session, seeded['overview'], False, 'user', clinician)

    assert len(calls) == 2
    overrides = fresh_rows(db_session, key='overview', scope='user')
    assert [row.is_visible for row in overrides] == [True]


def test_organization_hide_keeps_a_tab_for_members(db_session, seeded, org_admin, clinician):
    set_visibility(db_session, seeded['overview'], True, 'user', org_admin)
    keys = list(seeded)
    for key in keys[:-1]:
        set_visibility(db_session, seeded[key], False, 'organization', org_admin)

    with pytest.raises(InvalidStateError):
        set_visibility(db_session, seeded[keys[-1]], False, 'organization', org_admin)

    assert [tab.key for tab in resolve_tabs(db_session, clinician)] == [keys[-1]]
    assert 'overview' in [tab.key for tab in resolve_tabs(db_session, org_admin)]
    assert fresh_rows(db_session, key=keys[-1], scope='organization') == []


def test_role_hide_keeps_a_tab_for_role_members(db_session, seeded, clinician, colleague):
    set_visibility(db_session, seeded['overview'], True, 'user', clinician)
    keys = list(seeded)
    for key in keys[:-1]:
        set_visibility(db_session, seeded[key], False, 'role', clinician)

    with pytest.raises(InvalidStateError):
        set_visibility(db_session, seeded[keys[-1]], False, 'role', clinician)

    assert [tab.key for tab in resolve_tabs(db_session, colleague)] == [keys[-1]]


def test_deleting_organization_row_keeps_a_tab_for_members(db_session, seeded, org_admin, clinician):
    for row in fresh_rows(db_session, is_system_default=True):
        row.is_visible = False
    db_session.commit()
    set_visibility(db_session, seeded['overview'], True, 'user', org_admin)
    shown = set_visibility(db_session, seeded['lab'], True, 'organization', org_admin)

    with pytest.raises(InvalidStateError):
        delete_tab(db_session, shown.id, org_admin)

    assert [tab.key for tab in resolve_tabs(db_session, clinician)] == ['lab']

def test_visibility_endpoint(api_client, seeded, headers):
    resp = api_client.patch(
        f"/api/tab-configs/{seeded['documents']}/visibility",
        json={'isVisible': False, 'scope': 'user'},
        headers=headers(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body['key'] == 'documents'
    assert body['scope'] == 'user'
    assert body['isVisible'] is False
    assert body['isSystemDefault'] is False
    assert body['userId'] == 100

    listed = api_client.get('/api/tab-configs', headers=headers()).json()
    assert 'documents' not in [tab['key'] for tab in listed]

    with_hidden = api_client.get('/api/tab-configs?includeHidden=true', headers=headers()).json()
    assert 'documents' in [tab['key'] for tab in with_hidden]


def test_visibility_endpoint_reports_forbidden(api_client, seeded, headers):
    resp = api_client.patch(
        f"/api/tab-configs/{seeded['documents']}/visibility",
        json={'isVisible': False, 'scope': 'organization'},
        headers=headers(role='clinician'),
    )
    assert resp.status_code == 403
    body = resp.json()
    assert body['success'] is False
    assert body['error']['type'] == 'Forbidden'
    assert body['error']['code'] == 403

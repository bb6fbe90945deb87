import pytest

from crm_app.importer.errors import ConflictError, ResolutionError
from crm_app.importer.pipeline.index import EntityIndex
from crm_app.importer.pipeline.resolver import OrgResolver, collect_org_names, placeholder_org_name
from crm_app.importer.pipeline.rows import ImportRow


def _index_for(store):
    return EntityIndex.build(store.fetch_all_orgs(), store.fetch_all_courses())


def test_id_beats_code_and_name(fake_store):
    org_a = fake_store.add_org(100, "Liceo A", org_id="a")
    fake_store.add_org(200, "Liceo B", org_id="b")
    index = _index_for(fake_store)

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_id="a", org_code=200, org_name="Liceo B"), index)

    assert resolution.org_id == org_a.id
    assert resolution.via == "id"
    assert not resolution.created


def test_code_beats_name(fake_store):
    fake_store.add_org(100, "Liceo A", org_id="a")
    fake_store.add_org(200, "Liceo B", org_id="b")
    index = _index_for(fake_store)

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_code=200, org_name="Liceo A"), index)

    assert resolution.org_id == "b"
    assert resolution.via == "code"


def test_unknown_id_falls_back_to_code_with_note(fake_store):
    fake_store.add_org(100, "Liceo A", org_id="a")
    index = _index_for(fake_store)

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_id="zzz", org_code=100), index)

    assert resolution.org_id == "a"
    assert any("zzz" in message for message in resolution.messages)


def test_name_match_notes_unmapped_code(fake_store):
    fake_store.add_org(None, "Escuela San José", org_id="sj")
    index = _index_for(fake_store)

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_code=300, org_name="escuela  san jose"), index)

    assert resolution.org_id == "sj"
    assert resolution.via == "name"
    assert any("backfilled" in message for message in resolution.messages)
    assert fake_store.created_orgs == []


def test_new_code_creates_org_with_placeholder_name(fake_store):
    index = _index_for(fake_store)

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_code=999), index)

    assert resolution.created
    assert resolution.via == "created"
    created = fake_store.created_orgs[0]
    assert created.name == placeholder_org_name(999) == "Colegio RBD 999"
    assert index.find_by_code(999).id == resolution.org_id
    assert any("Colegio RBD 999" in message for message in resolution.messages)


def test_new_code_uses_row_name_when_present(fake_store):
    index = _index_for(fake_store)

    OrgResolver(fake_store).resolve(ImportRow(1, org_code=100, org_name="Liceo A"), index)

    assert fake_store.created_orgs[0].name == "Liceo A"


def test_nameless_row_creates_org_with_name_from_another_row(fake_store):
    rows = [ImportRow(1, org_code=100), ImportRow(2, org_code=100, org_name="Liceo A")]
    index = _index_for(fake_store)
    resolver = OrgResolver(fake_store, known_names=collect_org_names(rows))

    resolution = resolver.resolve(rows[0], index)

    assert resolution.created
    assert fake_store.created_orgs[0].name == "Liceo A"
    assert not any("name missing" in message for message in resolution.messages)


def test_collect_org_names_keeps_first_name_per_code():
    rows = [
        ImportRow(1, org_code=100),
        ImportRow(2, org_code=100, org_name="Liceo A"),
        ImportRow(3, org_code=100, org_name="Liceo A Bis"),
        ImportRow(4, org_name="Sin Código"),
        ImportRow(5, org_code=200, org_name="Escuela B"),
    ]

    assert collect_org_names(rows) == {100: "Liceo A", 200: "Escuela B"}


def test_creation_disabled_raises(fake_store):
    index = _index_for(fake_store)

    with pytest.raises(ResolutionError) as excinfo:
        OrgResolver(fake_store, allow_create=False).resolve(ImportRow(1, org_code=999), index)

    assert "creation is disabled" in str(excinfo.value)
    assert fake_store.created_orgs == []


def test_name_only_miss_never_creates_and_suggests_names(fake_store):
    fake_store.add_org(1, "Liceo Bicentenario Alamos")
    index = _index_for(fake_store)

    with pytest.raises(ResolutionError) as excinfo:
        OrgResolver(fake_store).resolve(ImportRow(1, org_name="Liceo Bicentenario Alamo"), index)

    message = str(excinfo.value)
    assert "Similar names: liceo bicentenario alamos" in message
    assert fake_store.created_orgs == []


def test_conflict_on_create_recovers_by_refetch(fake_store):
    hidden = fake_store.add_org(777, "Creado por otro proceso", hidden=True)
    index = _index_for(fake_store)
    assert index.find_by_code(777) is None

    resolution = OrgResolver(fake_store).resolve(ImportRow(1, org_code=777, org_name="Liceo C"), index)

    assert resolution.org_id == hidden.id
    assert resolution.via == "conflict"
    assert not resolution.created
    assert fake_store.created_orgs == []
    assert index.find_by_code(777).id == hidden.id


def test_conflict_without_refetch_result_is_a_resolution_error(fake_store):
    class AlwaysConflicting(type(fake_store)):
        def create_org(self, name, code):
            raise ConflictError(code)

    store = AlwaysConflicting()
    index = _index_for(store)

    with pytest.raises(ResolutionError) as excinfo:
        OrgResolver(store).resolve(ImportRow(1, org_code=5), index)

    assert "could not be re-fetched" in str(excinfo.value)

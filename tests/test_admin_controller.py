import asyncio

import pytest

from admin_controller import (
    AdminListController,
    AnimalsController,
    CollectionQuery,
    ControllerState,
    Write,
    call_with_deadline,
)
from errors import (
    ControllerBusyError,
    PartialFailureError,
    PolicyError,
    ResourceError,
    TransportError,
    ValidationError,
    WriteFailedError,
)
from resource_client import InMemoryResourceClient


def animal(name, status="Available", **extra):
    row = {"name": name, "species": "Dog", "current_status": status}
    row.update(extra)
    return row


SEED = {
    "adopt_animals": [animal("Rex", description="Good boy"), animal("Luna", species="Cat")],
    "rescued_animals": [animal("Rex", rescue_story="Found by the highway"), animal("Misty", "Under Care")],
    "donations": [{"name": "Kiran", "amount": 100}],
}


class FlakyClient(InMemoryResourceClient):
    """In-memory backend whose calls can be made to fail per collection."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_reads = set()
        self.failing_writes = set()
        self.select_calls = 0

    async def select(self, collection, filters=None, order=None, limit=None):
        self.select_calls += 1
        if collection in self.failing_reads:
            raise TransportError(f"{collection}: connection reset", collection=collection)
        return await super().select(collection, filters, order, limit)

    async def update(self, collection, record_id, patch):
        if collection in self.failing_writes:
            raise TransportError(f"{collection}: connection reset", collection=collection)
        return await super().update(collection, record_id, patch)


class GatedClient(InMemoryResourceClient):
    """Holds the next select open until its gate is released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = None
        self.entered = asyncio.Event()

    async def select(self, collection, filters=None, order=None, limit=None):
        rows = await super().select(collection, filters, order, limit)
        gate, self.gate = self.gate, None
        if gate is not None:
            self.entered.set()
            await gate.wait()
        return rows


@pytest.fixture
def client():
    return FlakyClient(seed=SEED)


@pytest.mark.asyncio
async def test_mount_loads_and_merges(client):
    animals = AnimalsController(client)
    await animals.mount()
    assert animals.state == ControllerState.READY
    assert sorted(e.name for e in animals.entities) == ["Luna", "Misty", "Rex"]
    rex = animals.get("REX")
    assert rex.dual_sourced
    assert rex.sources == ["adopt_animals", "rescued_animals"]
    assert animals.feed.started


@pytest.mark.asyncio
async def test_mount_is_idempotent(client):
    animals = AnimalsController(client)
    await animals.mount()
    calls = client.select_calls
    await animals.mount()
    assert client.select_calls == calls


@pytest.mark.asyncio
async def test_load_is_all_or_nothing(client):
    client.failing_reads.add("rescued_animals")
    animals = AnimalsController(client)
    await animals.mount()

    assert animals.state == ControllerState.LOAD_ERROR
    assert animals.entities == []
    assert isinstance(animals.last_error, TransportError)
    assert animals.last_error.collection == "rescued_animals"
    # one retry for reads
    assert client.select_calls == 1 + 2

    for action in (
        animals.set_status("Rex", "Adopted"),
        animals.edit_animal("Rex", {"age": "3"}),
        animals.delete_animal("Rex"),
    ):
        with pytest.raises(ControllerBusyError) as info:
            await action
        assert "could not be loaded" in str(info.value)


@pytest.mark.asyncio
async def test_load_error_recovers_on_next_refresh(client):
    client.failing_reads.add("rescued_animals")
    animals = AnimalsController(client)
    await animals.ensure_fresh()
    assert animals.state == ControllerState.LOAD_ERROR

    client.failing_reads.clear()
    await animals.ensure_fresh()
    assert animals.state == ControllerState.READY
    assert animals.last_error is None
    assert len(animals.entities) == 3


@pytest.mark.asyncio
async def test_status_change_writes_every_listing(client):
    animals = AnimalsController(client)
    await animals.mount()
    await animals.set_status("rex", "Adopted")

    statuses = [r["current_status"] for t in ("adopt_animals", "rescued_animals") for r in client.collections[t] if r["name"] == "Rex"]
    assert statuses == ["Adopted", "Adopted"]
    assert animals.state == ControllerState.READY
    assert animals.get("rex").current_status == "Adopted"


@pytest.mark.asyncio
async def test_partial_status_change(client):
    animals = AnimalsController(client)
    await animals.mount()
    client.failing_writes.add("rescued_animals")

    with pytest.raises(PartialFailureError) as info:
        await animals.set_status("Rex", "Adopted")

    err = info.value
    assert err.succeeded == ["adopt_animals"]
    assert err.failed_collections == ["rescued_animals"]
    assert "partially applied" in str(err)
    assert animals.state == ControllerState.MUTATION_ERROR
    assert animals.last_error is err

    adopt_rex = next(r for r in client.collections["adopt_animals"] if r["name"] == "Rex")
    rescued_rex = next(r for r in client.collections["rescued_animals"] if r["name"] == "Rex")
    assert adopt_rex["current_status"] == "Adopted"
    assert rescued_rex["current_status"] == "Available"

    # the section stays usable for a retry
    client.failing_writes.clear()
    await animals.set_status("Rex", "Adopted")
    assert animals.state == ControllerState.READY


@pytest.mark.asyncio
async def test_status_change_failing_everywhere_is_not_partial(client):
    animals = AnimalsController(client)
    await animals.mount()
    client.failing_writes.update({"adopt_animals", "rescued_animals"})

    with pytest.raises(WriteFailedError) as info:
        await animals.set_status("Rex", "Adopted")

    err = info.value
    assert not isinstance(err, PartialFailureError)
    assert err.failed_collections == ["adopt_animals", "rescued_animals"]
    assert "Nothing was changed" in str(err)
    assert "partially applied" not in str(err)
    assert animals.state == ControllerState.MUTATION_ERROR
    assert {r["current_status"] for t in ("adopt_animals", "rescued_animals") for r in client.collections[t]} == {
        "Available", "Under Care"
    }


@pytest.mark.asyncio
async def test_rex_listed_twice_under_different_case():
    client = FlakyClient(seed={})
    animals = AnimalsController(client)
    await animals.mount()

    await animals.add_animal({"name": "Rex", "species": "Dog"}, add_to="adopt")
    await animals.add_animal({"name": "rex", "species": "Dog"}, add_to="rescued")
    assert len(animals.entities) == 1
    rex = animals.get("REX")
    assert rex.name == "Rex"
    assert rex.dual_sourced

    await animals.set_status("rex", "Adopted")
    assert [r["current_status"] for r in client.collections["adopt_animals"]] == ["Adopted"]
    assert [r["current_status"] for r in client.collections["rescued_animals"]] == ["Adopted"]
    assert animals.get("Rex").current_status == "Adopted"


@pytest.mark.asyncio
async def test_single_failed_write_raises_backend_error(client):
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.mount()
    with pytest.raises(PolicyError):
        await donations.delete("no-such-id")
    assert donations.state == ControllerState.MUTATION_ERROR


@pytest.mark.asyncio
async def test_invalid_status_never_reaches_backend(client):
    animals = AnimalsController(client)
    await animals.mount()
    with pytest.raises(ValidationError):
        await animals.set_status("Rex", "adopted")
    assert animals.state == ControllerState.READY
    assert {r["current_status"] for r in client.collections["adopt_animals"]} == {"Available"}


@pytest.mark.asyncio
async def test_busy_controller_refuses_mutations(client):
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.mount()
    donations.state = ControllerState.MUTATING
    with pytest.raises(ControllerBusyError):
        await donations.insert({"name": "Asha", "amount": 5})
    assert len(client.collections["donations"]) == 1


@pytest.mark.asyncio
async def test_sequential_writes_stop_at_first_failure(client):
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.mount()
    client.failing_writes.add("donations")
    donation_id = client.collections["donations"][0]["id"]

    writes = [
        Write("donations", lambda: client.update("donations", donation_id, {"amount": 1})),
        Write("volunteers", lambda: client.insert("volunteers", {"name": "never"})),
    ]
    with pytest.raises(WriteFailedError) as info:
        await donations.mutate("Two-step change", writes, sequential=True)

    assert info.value.skipped == ["volunteers"]
    assert info.value.failed_collections == ["donations"]
    assert "not attempted: volunteers" in str(info.value)
    assert "Nothing was changed" in str(info.value)
    assert "volunteers" not in client.collections


@pytest.mark.asyncio
async def test_late_load_does_not_overwrite_newer_result():
    client = GatedClient(seed=SEED)
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.mount()

    gate = client.gate = asyncio.Event()
    stale = asyncio.ensure_future(donations.reload())
    await client.entered.wait()

    client.collections["donations"].append({"id": "d2", "name": "Asha", "amount": 5, "created_at": "2030-01-01T00:00:00+00:00"})
    await donations.reload()
    assert len(donations.items) == 2

    # the older request now answers with one row; it must be ignored
    gate.set()
    await stale
    assert len(donations.items) == 2
    assert donations.state == ControllerState.READY


@pytest.mark.asyncio
async def test_unmount_releases_subscriptions(client):
    animals = AnimalsController(client)
    await animals.mount()
    assert client.subscriber_count() == 2

    animals.unmount()
    assert client.subscriber_count() == 0
    assert animals.state == ControllerState.IDLE
    assert animals.entities == []
    assert not animals.mounted


@pytest.mark.asyncio
async def test_change_from_elsewhere_is_picked_up(client):
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.mount()

    await client.insert("donations", {"name": "Asha", "amount": 5})
    assert donations.feed.pending
    await donations.ensure_fresh()
    assert len(donations.items) == 2


@pytest.mark.asyncio
async def test_add_animal_to_both_listings(client):
    animals = AnimalsController(client)
    await animals.mount()
    await animals.add_animal({"name": "Bolt", "species": "Dog", "age": "4", "rescue_story": "Left at the gate"}, add_to="both")

    bolt = animals.get("bolt")
    assert bolt.dual_sourced
    assert bolt.age == 4
    adopt_row = next(r for r in client.collections["adopt_animals"] if r["name"] == "Bolt")
    assert adopt_row["description"] == "Left at the gate"
    assert "rescue_story" not in adopt_row


@pytest.mark.asyncio
async def test_add_animal_rejects_duplicate_listing(client):
    animals = AnimalsController(client)
    await animals.mount()
    with pytest.raises(ValidationError) as info:
        await animals.add_animal({"name": "luna", "species": "Cat"}, add_to="adopt")
    assert "already listed in adopt_animals" in info.value.errors["name"]


@pytest.mark.asyncio
async def test_edit_animal_maps_story_per_listing(client):
    animals = AnimalsController(client)
    await animals.mount()
    await animals.edit_animal("rex", {"story": "Rescued in 2023", "age": "5"})

    adopt_row = next(r for r in client.collections["adopt_animals"] if r["name"] == "Rex")
    rescued_row = next(r for r in client.collections["rescued_animals"] if r["name"] == "Rex")
    assert adopt_row["description"] == "Rescued in 2023"
    assert "rescue_story" not in adopt_row
    assert rescued_row["rescue_story"] == "Rescued in 2023"
    assert rescued_row["age"] == 5


@pytest.mark.asyncio
async def test_call_with_deadline_times_out_and_retries():
    attempts = []

    async def slow():
        attempts.append(1)
        await asyncio.sleep(1)

    with pytest.raises(TransportError) as info:
        await call_with_deadline("adopt_animals", slow, timeout_seconds=0.01, retries=1)
    assert info.value.collection == "adopt_animals"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_call_with_deadline_does_not_retry_policy_errors():
    attempts = []

    async def refused():
        attempts.append(1)
        raise PolicyError("permission denied for table admins")

    with pytest.raises(PolicyError):
        await call_with_deadline("admins", refused, retries=3)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_second_caller_waits_for_the_load_in_flight():
    client = GatedClient(seed=SEED)
    gate = client.gate = asyncio.Event()
    donations = AdminListController("donations", client, [CollectionQuery("donations")])

    first = asyncio.ensure_future(donations.ensure_fresh())
    await client.entered.wait()
    second = asyncio.ensure_future(donations.ensure_fresh())
    await asyncio.sleep(0)
    assert donations.state == ControllerState.LOADING
    assert not second.done()

    gate.set()
    await asyncio.gather(first, second)
    assert donations.state == ControllerState.READY
    assert len(donations.items) == 1


class BrokenOnceClient(InMemoryResourceClient):
    """First select fails with an error the backend layer does not map."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.broken = True

    async def select(self, collection, filters=None, order=None, limit=None):
        if self.broken:
            self.broken = False
            raise ValueError("unexpected payload")
        return await super().select(collection, filters, order, limit)


@pytest.mark.asyncio
async def test_unexpected_load_error_does_not_leave_section_loading():
    client = BrokenOnceClient(seed=SEED)
    donations = AdminListController("donations", client, [CollectionQuery("donations")])
    await donations.ensure_fresh()

    assert donations.state == ControllerState.LOAD_ERROR
    assert isinstance(donations.last_error, ResourceError)
    assert "unexpected payload" in str(donations.last_error)
    assert donations.items == []

    await donations.ensure_fresh()
    assert donations.state == ControllerState.READY
    await donations.insert({"name": "Asha", "amount": 5})
    assert len(donations.items) == 2

import pytest

from gpufusion.models import (
    GPU,
    LABEL_KEY_OWNER,
    GPUPhase,
    GPUStatus,
    NamespacedName,
    ObjectNotFoundError,
    OwnerReference,
    PlacementMode,
    Quantity,
    Resource,
    parse_quantity,
)


@pytest.mark.parametrize("text", ["20", "100", "1Gi", "16Gi"])
def test_quantity_string_round_trip(text):
    assert str(parse_quantity(text)) == text


def test_plain_integer_value():
    assert parse_quantity("100").value() == 100


def test_binary_suffixes_are_consistent():
    assert parse_quantity("16Gi") == parse_quantity("16384Mi")
    assert parse_quantity("1Mi") == parse_quantity("1024Ki")


def test_decimal_suffixes_are_consistent():
    assert parse_quantity("1k") == parse_quantity("1000")
    assert parse_quantity("500m") + parse_quantity("500m") == parse_quantity("1")


def test_exponent_form():
    assert parse_quantity("1e3") == parse_quantity("1k")


def test_value_rounds_up():
    assert parse_quantity("1.5").value() == 2


def test_ordering():
    assert parse_quantity("30Gi") < parse_quantity("40Gi")
    assert parse_quantity("8") <= parse_quantity("8")
    assert parse_quantity("20") > parse_quantity("10")


def test_add_then_sub_round_trip():
    base = parse_quantity("16Gi")
    delta = parse_quantity("6Gi")
    assert (base - delta) + delta == base
    assert str((base - delta) + delta) == "16Gi"


def test_arithmetic_accepts_strings():
    assert parse_quantity("100") - "30" == parse_quantity("70")


def test_negative_quantity():
    q = parse_quantity("-5")
    assert q < parse_quantity("0")
    assert -q == parse_quantity("5")


@pytest.mark.parametrize("text", ["", "abc", "1.2.3", "5Xi", "Gi"])
def test_invalid_quantity_raises(text):
    with pytest.raises(ValueError):
        parse_quantity(text)


def test_resource_coerces_strings():
    resource = Resource("10", "40Gi")
    assert resource.tflops == parse_quantity("10")
    assert resource.vram == parse_quantity("40Gi")


def test_resource_defaults_to_zero():
    resource = Resource()
    assert resource.tflops == Quantity(0)
    assert resource.vram.value() == 0


def test_gpu_key_and_node_name():
    gpu = GPU(name="gpu-1", namespace="default", labels={LABEL_KEY_OWNER: "node-1"})
    assert gpu.key() == NamespacedName("gpu-1", "default")
    assert gpu.node_name == "node-1"


def test_gpu_copy_is_independent():
    gpu = GPU(
        name="gpu-1",
        labels={LABEL_KEY_OWNER: "node-1"},
        status=GPUStatus(phase=GPUPhase.RUNNING, available=Resource("100", "16Gi")),
    )
    clone = gpu.copy()
    clone.status.available.tflops -= "50"
    clone.labels[LABEL_KEY_OWNER] = "node-2"
    assert gpu.status.available.tflops == parse_quantity("100")
    assert gpu.node_name == "node-1"
    assert clone == GPU(
        name="gpu-1",
        labels={LABEL_KEY_OWNER: "node-2"},
        status=GPUStatus(phase=GPUPhase.RUNNING, available=Resource("50", "16Gi")),
    )


def test_namespaced_name_string():
    assert str(NamespacedName("gpu-1", "default")) == "default/gpu-1"


def test_enum_values_compare_with_strings():
    assert GPUPhase.RUNNING == "Running"
    assert PlacementMode("LowLoadFirst") is PlacementMode.LOW_LOAD_FIRST


def test_owner_reference_fields():
    ref = OwnerReference(api_version="apps/v1", kind="Deployment", name="owner", controller=True)
    assert (ref.kind, ref.name, ref.controller) == ("Deployment", "owner", True)


def test_not_found_is_a_lookup_error_naming_the_object():
    error = ObjectNotFoundError("gpu-1")
    assert isinstance(error, LookupError)
    assert "gpu-1" in str(error)
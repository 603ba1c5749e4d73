import pytest

from gpufusion.models import NamespacedName, Resource, parse_quantity
from gpufusion.tf_parser import (
    AUTO_SCALE_LIMITS_ANNOTATION,
    AUTO_SCALE_REPLICAS_ANNOTATION,
    AUTO_SCALE_REQUESTS_ANNOTATION,
    ENABLED_REPLICAS_ANNOTATION,
    GEN_WORKLOAD_ANNOTATION,
    GPU_COUNT_ANNOTATION,
    GPU_POOL_ANNOTATION,
    INJECT_CONTAINER_ANNOTATION,
    IS_LOCAL_GPU_ANNOTATION,
    NO_STANDALONE_WORKER_MODE_ANNOTATION,
    REPLICAS_ANNOTATION,
    TFLOPS_REQUEST_ANNOTATION,
    VRAM_LIMIT_ANNOTATION,
    WORKLOAD_KEY,
    WORKLOAD_PROFILE_ANNOTATION,
    ParseError,
    TensorFusionInfo,
    WorkloadProfileSpec,
    parse_tensor_fusion_info,
)


def _profile():
    return WorkloadProfileSpec(
        pool_name="mock",
        requests=Resource(tflops="10", vram="1Gi"),
        limits=Resource(tflops="100", vram="16Gi"),
    )


def _profiles():
    return {NamespacedName("test-profile-parse-tf-resources", "default"): _profile()}


def _pod(annotations, namespace="default"):
    return {"metadata": {"namespace": namespace, "annotations": annotations}}


def test_parse_from_profile_with_override():
    pod = _pod(
        {
            GPU_POOL_ANNOTATION: "mock",
            WORKLOAD_PROFILE_ANNOTATION: "test-profile-parse-tf-resources",
            WORKLOAD_KEY: "test-workload",
            TFLOPS_REQUEST_ANNOTATION: "20",
            INJECT_CONTAINER_ANNOTATION: "test-container",
            ENABLED_REPLICAS_ANNOTATION: "3",
        }
    )
    info = parse_tensor_fusion_info(pod, _profiles())
    assert info.container_names == ["test-container"]
    assert info.profile.pool_name == "mock"
    assert str(info.profile.requests.tflops) == "20"
    assert str(info.profile.requests.vram) == "1Gi"
    assert str(info.profile.limits.tflops) == "100"
    assert str(info.profile.limits.vram) == "16Gi"
    assert info.enabled_replicas == 3
    assert info.workload_name == "test-workload"


def test_profile_is_not_modified():
    profiles = _profiles()
    pod = _pod(
        {
            GPU_POOL_ANNOTATION: "other",
            WORKLOAD_PROFILE_ANNOTATION: "test-profile-parse-tf-resources",
            WORKLOAD_KEY: "w",
            TFLOPS_REQUEST_ANNOTATION: "20",
            INJECT_CONTAINER_ANNOTATION: "main",
        }
    )
    info = parse_tensor_fusion_info(pod, profiles)
    stored = profiles[NamespacedName("test-profile-parse-tf-resources", "default")]
    assert str(stored.requests.tflops) == "10"
    assert stored.pool_name == "mock"
    assert info.profile.pool_name == "other"


def test_parse_minimal_pod_with_generated_workload():
    pod = _pod(
        {
            GPU_POOL_ANNOTATION: "mock",
            INJECT_CONTAINER_ANNOTATION: "main",
            WORKLOAD_KEY: "test-workload-empty-ns",
            GEN_WORKLOAD_ANNOTATION: "true",
        },
        namespace="",
    )
    info = parse_tensor_fusion_info(pod)
    assert info == TensorFusionInfo(
        profile=WorkloadProfileSpec(pool_name="mock"),
        workload_name="test-workload-empty-ns",
        container_names=["main"],
        replicas=1,
        enabled_replicas=None,
        gen_workload=True,
    )


def test_pod_without_annotations_is_rejected():
    with pytest.raises(ParseError, match="no annotations found"):
        parse_tensor_fusion_info({"metadata": {"name": "test-pod-no-tf"}})


def test_missing_workload_key():
    with pytest.raises(ParseError, match="workload key not found"):
        parse_tensor_fusion_info(_pod({GPU_POOL_ANNOTATION: "mock"}))


def test_missing_pool():
    pod = _pod({WORKLOAD_KEY: "w", INJECT_CONTAINER_ANNOTATION: "main"})
    with pytest.raises(ParseError, match="gpu pool not found"):
        parse_tensor_fusion_info(pod)


def test_missing_inject_container():
    pod = _pod({WORKLOAD_KEY: "w", GPU_POOL_ANNOTATION: "mock"})
    with pytest.raises(ParseError, match="inject container not found"):
        parse_tensor_fusion_info(pod)


def test_unknown_profile():
    pod = _pod(
        {
            WORKLOAD_KEY: "w",
            GPU_POOL_ANNOTATION: "mock",
            WORKLOAD_PROFILE_ANNOTATION: "missing",
            INJECT_CONTAINER_ANNOTATION: "main",
        }
    )
    with pytest.raises(ParseError, match="missing"):
        parse_tensor_fusion_info(pod, _profiles())


@pytest.mark.parametrize(
    "annotation,value,message",
    [
        (ENABLED_REPLICAS_ANNOTATION, "abc", "invalid enabledReplicas value"),
        (REPLICAS_ANNOTATION, "2147483648", "invalid replicas value"),
        (GPU_COUNT_ANNOTATION, "1.5", "invalid gpuCount value"),
    ],
)
def test_invalid_integers(annotation, value, message):
    annotations = {
        WORKLOAD_KEY: "w",
        GPU_POOL_ANNOTATION: "mock",
        INJECT_CONTAINER_ANNOTATION: "main",
        annotation: value,
    }
    with pytest.raises(ParseError, match=message):
        parse_tensor_fusion_info(_pod(annotations))


def test_invalid_quantity():
    annotations = {
        WORKLOAD_KEY: "w",
        GPU_POOL_ANNOTATION: "mock",
        INJECT_CONTAINER_ANNOTATION: "main",
        VRAM_LIMIT_ANNOTATION: "lots",
    }
    with pytest.raises(ParseError):
        parse_tensor_fusion_info(_pod(annotations))


def test_flags_counts_and_containers():
    annotations = {
        WORKLOAD_KEY: "w",
        GPU_POOL_ANNOTATION: "mock",
        INJECT_CONTAINER_ANNOTATION: "a,b",
        REPLICAS_ANNOTATION: "4",
        GPU_COUNT_ANNOTATION: "2",
        VRAM_LIMIT_ANNOTATION: "16Gi",
        IS_LOCAL_GPU_ANNOTATION: "true",
        NO_STANDALONE_WORKER_MODE_ANNOTATION: "true",
        AUTO_SCALE_LIMITS_ANNOTATION: "true",
        AUTO_SCALE_REQUESTS_ANNOTATION: "TRUE",
        AUTO_SCALE_REPLICAS_ANNOTATION: "true",
        GEN_WORKLOAD_ANNOTATION: "yes",
    }
    info = parse_tensor_fusion_info(_pod(annotations))
    assert info.container_names == ["a", "b"]
    assert info.replicas == 4
    assert info.profile.gpu_count == 2
    assert info.profile.limits.vram == parse_quantity("16Gi")
    assert info.profile.is_local_gpu is True
    assert info.profile.no_standalone_worker_mode is True
    assert info.profile.auto_set_limits is True
    assert info.profile.auto_set_requests is False
    assert info.profile.auto_set_replicas is True
    assert info.gen_workload is False


def test_empty_inject_container_gives_single_empty_name():
    annotations = {WORKLOAD_KEY: "w", GPU_POOL_ANNOTATION: "mock", INJECT_CONTAINER_ANNOTATION: ""}
    info = parse_tensor_fusion_info(_pod(annotations))
    assert info.container_names == [""]
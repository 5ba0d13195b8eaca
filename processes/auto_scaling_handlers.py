"""Deterministic handlers for ``processes/auto-scaling.yaml``.

Stand-ins for the agents that would analyse workloads and write manifests;
every handler derives its output from the payload alone, so runs are
repeatable and usable in demos and tests::

    phasegate run processes/auto-scaling.yaml \\
        --invoker auto_scaling_handlers:build_invoker --auto-approve

Run params that steer the outcome:
    services           list of service names; ``*-flaky`` services fail load testing
    max_monthly_cost   budget; the capacity gate fires when peak cost exceeds it
    infrastructure     ``vm``/``hybrid`` replace HPA and cluster autoscaler with
                       auto-scaling groups
    cloud_provider     ``on-premise`` has no managed auto-scaling groups, so the
                       optional VM phase fails and the run continues
"""

from __future__ import annotations

from typing import Any

from phasegate.orchestration import CallableInvoker

_COST_PER_REPLICA = 180
_COST_PER_NODE = 400


def analyze_workload(payload: dict[str, Any]) -> dict[str, Any]:
    services = list(payload.get("services") or [])
    patterns = {name: ("bursty" if "api" in name else "steady") for name in services}
    return {
        "project": payload.get("project"),
        "patterns": patterns,
        "recommendation": "hpa" if any(p == "bursty" for p in patterns.values()) else "vpa",
        "score_components": {"workload_analysis": 90 if services else 40},
        "artifacts": [{"path": "scaling/workload-analysis.json", "label": "Workload analysis"}],
    }


def configure_hpa(payload: dict[str, Any]) -> dict[str, Any]:
    services = list(payload.get("services") or [])
    return {
        "hpa": {name: {"min": 2, "max": 10, "target_cpu": 70} for name in services},
        "score_components": {"scaling_configuration": 85},
        "artifacts": [
            {"path": f"k8s/hpa/{name}.yaml", "format": "yaml", "label": f"HPA {name}"} for name in services
        ],
    }


def configure_vpa(payload: dict[str, Any]) -> dict[str, Any]:
    return {"vpa": {"update_mode": "Auto"}}


def configure_cluster_autoscaler(payload: dict[str, Any]) -> dict[str, Any]:
    node_groups = [{"name": "general", "min": 2, "max": 8}]
    return {
        "cloud_provider": payload.get("cloud_provider"),
        "node_groups": node_groups,
        "min_nodes": sum(g["min"] for g in node_groups),
        "max_nodes": sum(g["max"] for g in node_groups),
        "estimated_max_monthly_cost": sum(g["max"] for g in node_groups) * _COST_PER_NODE,
        "artifacts": [{"path": "k8s/cluster-autoscaler.yaml", "format": "yaml", "label": "Cluster autoscaler"}],
    }


def configure_vm_autoscaling(payload: dict[str, Any]) -> dict[str, Any]:
    provider = str(payload.get("cloud_provider") or "aws")
    if provider == "on-premise":
        raise RuntimeError("no managed auto-scaling groups on on-premise infrastructure")
    services = list(payload.get("services") or [])
    per_service = max(2, int(payload.get("max_instances") or 50) // max(len(services), 1))
    groups = [{"name": f"{name}-asg", "provider": provider, "min": 2, "max": per_service} for name in services]
    return {
        "groups": groups,
        "score_components": {"scaling_configuration": 80},
        "artifacts": [
            {"path": f"terraform/autoscaling/{g['name']}.tf", "format": "hcl", "label": f"ASG {g['name']}"}
            for g in groups
        ],
    }


def configure_custom_metrics(payload: dict[str, Any]) -> dict[str, Any]:
    engine = "keda" if payload.get("infrastructure") == "kubernetes" else "cloud-metrics"
    services = list(payload.get("services") or [])
    scalers = [{"metric": metric, "engine": engine, "services": services} for metric in payload.get("custom_metrics") or []]
    return {
        "scalers": scalers,
        "artifacts": [
            {"path": f"scaling/custom-metrics/{s['metric']}.yaml", "format": "yaml", "label": f"Scaler {s['metric']}"}
            for s in scalers
        ],
    }


def configure_predictive_scaling(payload: dict[str, Any]) -> dict[str, Any]:
    patterns = dict(payload.get("patterns") or {})
    bursty = sorted(name for name, pattern in patterns.items() if pattern == "bursty")
    if not bursty:
        raise ValueError("predictive scaling needs at least one bursty workload")
    return {"forecasts": {name: {"lookahead_minutes": 30, "model": "seasonal"} for name in bursty}}


def configure_policies(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "scale_up_cooldown_seconds": 60,
        "scale_down_cooldown_seconds": 300,
        "score_components": {"policies": 80},
    }


def setup_monitoring(payload: dict[str, Any]) -> dict[str, Any]:
    dashboards = ["scaling-overview"]
    alerts = ["replicas-at-max", "pending-pods"]
    return {
        "dashboards": dashboards,
        "alerts": alerts,
        "dashboard_count": len(dashboards),
        "alert_count": len(alerts),
        "score_components": {"monitoring": 75},
        "artifacts": [{"path": "monitoring/scaling-dashboard.json", "label": "Scaling dashboard"}],
    }


def load_test(payload: dict[str, Any]) -> dict[str, Any]:
    service = str(payload.get("service"))
    if service.endswith("-flaky"):
        raise RuntimeError(f"load test for {service} exceeded p99 latency budget")
    share = 0.15 / max(len(payload.get("services") or [service]), 1)
    return {
        "service": service,
        "environment": payload.get("environment"),
        "p99_ms": 240,
        "score_components": [{"name": "load_testing", "weight": share, "value": 88}],
    }


def plan_capacity(payload: dict[str, Any]) -> dict[str, Any]:
    budget = float(payload.get("budget") or 0)
    peak_replicas = int(payload.get("peak_replicas") or 20)
    peak_cost = peak_replicas * _COST_PER_REPLICA
    return {
        "peak_replicas": peak_replicas,
        "peak_cost": peak_cost,
        "over_budget": peak_cost > budget,
        "artifacts": [{"path": "scaling/capacity-plan.md", "format": "markdown", "label": "Capacity plan"}],
    }


def generate_documentation(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "runbook_path": "docs/auto-scaling-runbook.md",
        "artifacts": [
            {
                "path": "docs/auto-scaling-runbook.md",
                "format": "markdown",
                "label": f"Runbook for {payload.get('project')} ({payload.get('infrastructure')})",
            }
        ],
    }


def calculate_scaling_score(payload: dict[str, Any]) -> dict[str, Any]:
    """Summarise what was configured; the engine computes the numeric score."""
    scalers = [f"hpa/{name}" for name in payload.get("hpa") or {}]
    if payload.get("vpa"):
        scalers.append("vpa")
    scalers += [f"cluster-autoscaler/{g['name']}" for g in payload.get("node_groups") or []]
    scalers += [f"asg/{g['name']}" for g in payload.get("vm_groups") or []]
    scalers += [f"custom/{s['metric']}" for s in payload.get("custom_scalers") or []]
    scalers += [f"predictive/{name}" for name in payload.get("forecasts") or {}]
    return {
        "scalers": scalers,
        "scaler_count": len(scalers),
        "quality_threshold": 85 if payload.get("environment") == "production" else 75,
        "load_testing_passed": not payload.get("load_testing_failed"),
        "artifacts": [{"path": "scaling/auto-scaling-summary.json", "label": "Auto-scaling summary"}],
    }


HANDLERS = {
    "analyze-workload": analyze_workload,
    "configure-hpa": configure_hpa,
    "configure-vpa": configure_vpa,
    "configure-cluster-autoscaler": configure_cluster_autoscaler,
    "configure-vm-autoscaling": configure_vm_autoscaling,
    "configure-custom-metrics": configure_custom_metrics,
    "configure-predictive-scaling": configure_predictive_scaling,
    "configure-policies": configure_policies,
    "setup-monitoring": setup_monitoring,
    "load-test": load_test,
    "plan-capacity": plan_capacity,
    "generate-documentation": generate_documentation,
    "calculate-scaling-score": calculate_scaling_score,
}


def build_invoker() -> CallableInvoker:
    """Factory for ``--invoker auto_scaling_handlers:build_invoker``."""
    return CallableInvoker(HANDLERS)

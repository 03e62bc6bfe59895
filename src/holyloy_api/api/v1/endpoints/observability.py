"""Observability endpoints for reward cascade telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from holyloy_api.api.dependencies.security import require_observability_api_key
from holyloy_api.observability.rewards import get_rewards_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/rewards",
    dependencies=[Depends(require_observability_api_key)],
    summary="Reward cascade observability snapshot",
)
async def get_rewards_snapshot() -> dict[str, object]:
    """Retrieve aggregated cascade metrics (requires observability API key)."""
    return get_rewards_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | str, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_observability_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_rewards_store().snapshot()

    lines: list[str] = []
    for source, value in snapshot.cascades.items():
        lines.extend(
            _format_metric(
                "holyloy_reward_cascades_total",
                "Reward cascades processed grouped by earning source",
                value,
                labels={"source": source},
            )
        )
    lines.extend(
        _format_metric(
            "holyloy_global_numbers_allocated_total",
            "Global Numbers allocated from earned points",
            snapshot.global_numbers,
        )
    )

    for outcome, kinds in snapshot.tasks.items():
        for kind, value in kinds.items():
            lines.extend(
                _format_metric(
                    "holyloy_cascade_tasks_total",
                    "Cascade tasks grouped by outcome",
                    value,
                    labels={"outcome": outcome, "kind": kind},
                )
            )

    for kind, payout in snapshot.payouts.items():
        lines.extend(
            _format_metric(
                "holyloy_reward_payouts_total",
                "Reward payouts credited grouped by kind",
                payout["count"],
                labels={"kind": kind},
            )
        )
        lines.extend(
            _format_metric(
                "holyloy_reward_payout_amount_total",
                "Reward amount credited grouped by kind",
                payout["total"],
                labels={"kind": kind},
            )
        )

    for event, value in snapshot.qr_transfers.items():
        lines.extend(
            _format_metric(
                "holyloy_qr_transfer_events_total",
                "QR transfer token events",
                value,
                labels={"event": event},
            )
        )

    for key, value in snapshot.redrive.items():
        lines.extend(
            _format_metric(
                "holyloy_cascade_redrive_total",
                "Cascade re-drive counters",
                value,
                labels={"counter": key},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")

"""Command-line interface for path_timeline.

Run:
    python -m path_timeline import --csv Path.csv --store timeline.json
    python -m path_timeline timeline --store timeline.json --start 2025-01-01 --end 2025-01-07
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, Sequence

from path_timeline.config import (
    PipelineSettings,
    get_nested,
    load_config,
    parameters_from_config,
    settings_from_config,
)
from path_timeline.csv_io import load_point_inputs
from path_timeline.errors import TimelineError
from path_timeline.models import DEFAULT_TZ, ProcessedVisit, TransportMode, Trip
from path_timeline.pipeline import LocationPipeline
from path_timeline.recalculation import RecalculationReport, RecalculationScheduler, TimeWindow
from path_timeline.store import TimelineStore
from path_timeline.timeutils import day_bounds_ms, dt_from_epoch_ms, epoch_ms_from_dt, format_hhmmss, parse_dt
from path_timeline.visits import sum_visits, write_timeline_csv


def configure_logging(level_name: str) -> None:
    """Configure root logger with a console handler."""

    level = getattr(logging, level_name.upper(), logging.INFO)
    fmt = "%(asctime)s - %(levelname)s - %(message)s"
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)


def _settings(args: argparse.Namespace) -> PipelineSettings:
    cfg: Dict[str, Any] = load_config(args.config) if args.config else {}
    if args.tz:
        cfg["tz"] = args.tz
    return settings_from_config(cfg)


def _open(args: argparse.Namespace) -> tuple[TimelineStore, LocationPipeline]:
    store = TimelineStore.load(args.store)
    return store, LocationPipeline(store, _settings(args))


def _range_ms(args: argparse.Namespace, tz_name: str) -> tuple[int, int]:
    start = parse_dt(args.start, tz_name)
    end = parse_dt(args.end, tz_name)
    if len(args.end.strip()) == 10:
        # a bare date means "until the end of that day"
        end_ms = day_bounds_ms(end.date(), tz_name)[1] - 1
    else:
        end_ms = epoch_ms_from_dt(end)
    return epoch_ms_from_dt(start), end_ms


def _print_report(report: RecalculationReport) -> None:
    outcomes = dict(report.visit_outcomes())
    print(
        f"重算窗口：完成={len(report.completed)}，失败={len(report.failed)}，跳过={report.skipped}；"
        f"visit 变化={outcomes}"
    )
    for failure in report.failed:
        print(f"  窗口 {failure.window.start_ms}..{failure.window.end_ms} 失败（可重试）：{failure.error}", file=sys.stderr)


def _cmd_import(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    points, summary = load_point_inputs(args.csv, pipeline.settings.tz_name)
    print(f"total_rows={summary.rows_total}, parsed={summary.rows_parsed}, skipped={summary.rows_skipped}")

    result = pipeline.put(args.user, points)
    print(f"导入：accepted={result.accepted}，duplicates={result.duplicates}，rejected={result.rejected}")

    if not args.no_process:
        report = pipeline.trigger_recalculation(args.user)
        _print_report(report)
    store.save(args.store)
    print(f"已保存：{args.store}")
    return 0


def _cmd_recalculate(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    window = None
    if args.start and args.end:
        window = TimeWindow(*_range_ms(args, pipeline.settings.tz_name))

    users = store.users() if args.all_users else [args.user]
    with RecalculationScheduler(pipeline, max_workers=args.workers) as scheduler:
        futures = {user: scheduler.submit(user, window) for user in users}
        reports = {user: fut.result() for user, fut in futures.items()}

    for user, report in reports.items():
        if len(reports) > 1:
            print(f"[{user}]")
        _print_report(report)
    store.save(args.store)
    return 0 if all(r.ok for r in reports.values()) else 1


def _cmd_timeline(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    tz_name = pipeline.settings.tz_name
    start_ms, end_ms = _range_ms(args, tz_name)
    items = pipeline.get_timeline(args.user, start_ms, end_ms)
    places = {p.place_id: p for p in store.places(args.user)}

    for item in items:
        start = dt_from_epoch_ms(item.start_ms, tz_name).isoformat(sep=" ", timespec="seconds")
        end = dt_from_epoch_ms(item.end_ms, tz_name).isoformat(sep=" ", timespec="seconds")
        if isinstance(item, Trip):
            print(
                f"  trip  {start} -> {end}  {format_hhmmss(item.duration_seconds)}  "
                f"{item.travelled_distance_m:8.0f} m  {item.transport_mode.value}"
            )
        else:
            place = places.get(item.place_id)
            label = (place.name if place and place.name else f"place#{item.place_id}")
            print(f"visit  {start} -> {end}  {format_hhmmss(item.duration_seconds)}  {label}")

    total = sum_visits((i for i in items if isinstance(i, ProcessedVisit)), start_ms, end_ms)
    print(f"visits={total.visits}, total={total.total_hhmmss}（{total.total_seconds:.1f}s）")
    if args.out:
        write_timeline_csv(items, places, args.out, tz_name)
        print(f"已导出：{args.out}")
    return 0


def _cmd_preview(args: argparse.Namespace) -> int:
    _, pipeline = _open(args)
    tz_name = pipeline.settings.tz_name
    base = pipeline.lookup.current(args.user)
    params = parameters_from_config(load_config(args.params), base) if args.params else base
    day = parse_dt(args.date, tz_name).date()
    items = pipeline.preview_detection(args.user, params, day)
    visits = [i for i in items if isinstance(i, ProcessedVisit)]
    print(f"预览 {day.isoformat()}：visits={len(visits)}，trips={len(items) - len(visits)}")
    for item in items:
        start = dt_from_epoch_ms(item.start_ms, tz_name).strftime("%H:%M:%S")
        end = dt_from_epoch_ms(item.end_ms, tz_name).strftime("%H:%M:%S")
        kind = "trip " if isinstance(item, Trip) else "visit"
        print(f"  {kind} {start} -> {end}  {format_hhmmss(item.duration_seconds)}")
    return 0


def _cmd_params(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    tz_name = pipeline.settings.tz_name
    if args.set:
        cfg = load_config(args.set)
        params = parameters_from_config(cfg, pipeline.lookup.current(args.user))
        since = get_nested(cfg, ["detection", "valid_since"], None)
        if since is not None:
            params = replace(params, valid_since_ms=epoch_ms_from_dt(parse_dt(str(since), tz_name)))
        pipeline.save_detection_parameters(args.user, params)
        store.save(args.store)
        print("已保存新的检测参数（已有 visits 需重算后才会变化）")

    history = pipeline.get_detection_parameters(args.user)
    current = pipeline.lookup.current(args.user)
    if not history.entries:
        print("（无用户参数，使用系统默认值）")
    for entry in history.entries:
        since = "始终" if entry.valid_since_ms is None else dt_from_epoch_ms(entry.valid_since_ms, tz_name).isoformat(sep=" ")
        marker = "*" if entry == current else " "
        print(f"{marker} valid_since={since}")
        print(f"    {entry.visit_detection}")
        print(f"    {entry.visit_merging}")
        print(f"    {entry.location_density}")
    if not history.entries:
        defaults = pipeline.lookup.defaults
        print(f"* {defaults.visit_detection}")
        print(f"  {defaults.visit_merging}")
        print(f"  {defaults.location_density}")
    return 0


def _cmd_place(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    polygon = None if args.clear else json.loads(args.polygon)
    report = pipeline.update_place_geometry(args.user, args.place_id, polygon)
    _print_report(report)
    store.save(args.store)
    return 0 if report.ok else 1


def _cmd_trip_mode(args: argparse.Namespace) -> int:
    store, pipeline = _open(args)
    trip = pipeline.override_transport_mode(args.user, args.trip_id, TransportMode(args.mode.upper()))
    store.save(args.store)
    print(f"trip {trip.trip_id}: {trip.transport_mode.value}")
    return 0


def _cmd_geocode(args: argparse.Namespace) -> int:
    from path_timeline.geocode import JsonDiskCache, NominatimConfig, NominatimReverseGeocoder, geocode_pending_places

    store, pipeline = _open(args)
    cache = JsonDiskCache(args.geocode_cache)
    cfg = NominatimConfig(
        accept_language=args.geocode_lang,
        min_interval_seconds=args.geocode_min_interval,
        user_agent=args.geocode_user_agent,
        timeout_seconds=args.geocode_timeout_seconds,
    )
    geocoder = NominatimReverseGeocoder(cfg, cache=cache, precision=args.geocode_precision)
    try:
        result = geocode_pending_places(store, geocoder, pipeline.events, include_unnamed=True)
    except KeyboardInterrupt:
        # 优雅中断：保留已请求到的缓存与地名
        print("\n收到中断信号：停止继续请求，保存当前结果……", file=sys.stderr, flush=True)
        result = None
    cache.flush()
    store.save(args.store)
    if result is not None:
        print(f"逆地理编码：named={result.named}，failed={result.failed}，skipped={result.skipped}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--store", type=str, default="timeline.json", help="时间线存储文件（JSON快照）")
    common.add_argument("--user", type=str, default="me", help="用户标识")
    common.add_argument("--tz", type=str, default=None, help=f"时区（IANA），默认 {DEFAULT_TZ} 或配置文件中的 tz")
    common.add_argument("--config", type=str, default=None, help="系统配置YAML（anomaly/density/transport_modes/detection）")
    common.add_argument("--log-level", type=str, default="WARNING", help="日志级别（DEBUG/INFO/WARNING）")

    p = argparse.ArgumentParser(prog="path_timeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_imp = sub.add_parser("import", parents=[common], help="导入 Path.csv 轨迹点并增量重算时间线")
    p_imp.add_argument("--csv", type=str, default="Path.csv", help="输入CSV路径")
    p_imp.add_argument("--no-process", action="store_true", help="只导入，不触发重算")
    p_imp.set_defaults(func=_cmd_import)

    p_re = sub.add_parser("recalculate", parents=[common], help="重算未处理的点，或指定时间窗口")
    p_re.add_argument("--start", type=str, default=None, help="窗口开始（例如 2025-12-01 00:00:00）")
    p_re.add_argument("--end", type=str, default=None, help="窗口结束（例如 2025-12-31 23:59:59）")
    p_re.add_argument("--all-users", action="store_true", help="重算存储中的所有用户（按用户并行）")
    p_re.add_argument("--workers", type=int, default=4, help="并行线程数（--all-users 时有效）")
    p_re.set_defaults(func=_cmd_recalculate)

    p_tl = sub.add_parser("timeline", parents=[common], help="列出时间范围内的 visits/trips")
    p_tl.add_argument("--start", type=str, required=True, help="开始（例如 2025-12-01）")
    p_tl.add_argument("--end", type=str, required=True, help="结束（日期则包含当天）")
    p_tl.add_argument("--out", type=str, default=None, help="导出 timeline.csv 路径（可选）")
    p_tl.set_defaults(func=_cmd_timeline)

    p_pv = sub.add_parser("preview", parents=[common], help="用新参数预览某天的识别结果（不写入存储）")
    p_pv.add_argument("--date", type=str, required=True, help="日期（例如 2025-12-18）")
    p_pv.add_argument("--params", type=str, default=None, help="检测参数YAML（detection: ...）")
    p_pv.set_defaults(func=_cmd_preview)

    p_pa = sub.add_parser("params", parents=[common], help="查看/保存用户检测参数历史")
    p_pa.add_argument("--set", type=str, default=None, help="从YAML保存一条新参数（可含 detection.valid_since）")
    p_pa.set_defaults(func=_cmd_params)

    p_pl = sub.add_parser("place", parents=[common], help="设置/清除地点多边形，并重建受影响的天")
    p_pl.add_argument("--place-id", type=int, required=True, help="地点ID")
    grp = p_pl.add_mutually_exclusive_group(required=True)
    grp.add_argument("--polygon", type=str, help='JSON 顶点列表 [[lat, lon], ...]')
    grp.add_argument("--clear", action="store_true", help="清除多边形")
    p_pl.set_defaults(func=_cmd_place)

    p_tm = sub.add_parser("trip-mode", parents=[common], help="手动指定某段 trip 的交通方式")
    p_tm.add_argument("--trip-id", type=int, required=True, help="trip ID")
    p_tm.add_argument("--mode", type=str, required=True, choices=[m.value.lower() for m in TransportMode], help="交通方式")
    p_tm.set_defaults(func=_cmd_trip_mode)

    p_gc = sub.add_parser("geocode", parents=[common], help="为未命名地点做逆地理编码（Nominatim）")
    p_gc.add_argument("--geocode-cache", type=str, default="geocode_cache.json", help="逆地理编码缓存文件")
    p_gc.add_argument("--geocode-lang", type=str, default="zh-CN", help="逆地理编码语言（如 zh-CN/en）")
    p_gc.add_argument(
        "--geocode-precision",
        type=int,
        default=4,
        help="缓存用坐标小数位数（4约~11m纬度分辨率）",
    )
    p_gc.add_argument(
        "--geocode-min-interval",
        type=float,
        default=1.0,
        help="请求最小间隔（秒），公共服务建议>=1.0",
    )
    p_gc.add_argument("--geocode-timeout-seconds", type=float, default=20.0, help="单次请求超时（秒）")
    p_gc.add_argument(
        "--geocode-user-agent",
        type=str,
        default="path-timeline/0.1.0 (reverse-geocode; set your own UA)",
        help="HTTP User-Agent（建议填你自己的标识，避免被服务方屏蔽）",
    )
    p_gc.set_defaults(func=_cmd_geocode)

    return p


def main(argv: Sequence[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return int(args.func(args))
    except (TimelineError, ValueError) as exc:
        print(f"错误：{exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

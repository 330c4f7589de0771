from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any

import streamlit as st

from path_timeline.config import DetectionParameters, LocationDensity, VisitDetection, VisitMerging, settings_from_config
from path_timeline.errors import TimelineError
from path_timeline.models import DEFAULT_TZ, SignificantPlace, TimelineItem, Trip
from path_timeline.pipeline import LocationPipeline
from path_timeline.store import TimelineStore
from path_timeline.timeutils import dt_from_epoch_ms, format_hhmmss, tzinfo_from_name


def _range_to_epoch_ms(start_d: date, end_d: date, tz_name: str) -> tuple[int, int]:
    """Convert date range to epoch-ms [start, end) in tz."""

    tz = tzinfo_from_name(tz_name)
    start_dt = datetime.combine(start_d, time.min).replace(tzinfo=tz)
    end_dt = datetime.combine(end_d + timedelta(days=1), time.min).replace(tzinfo=tz)
    return int(start_dt.timestamp() * 1000), int(end_dt.timestamp() * 1000)


@st.cache_data(show_spinner=False)
def _load_snapshot(store_path: str, mtime: float) -> dict[str, Any]:
    _ = mtime  # part of cache key so updated files reload automatically
    return json.loads(Path(store_path).read_text(encoding="utf-8"))


def _rows(items: list[TimelineItem], places: dict[int, SignificantPlace], tz_name: str) -> list[dict[str, object]]:
    def label(place_id: int) -> str:
        place = places.get(place_id)
        return place.name if place is not None and place.name else f"place#{place_id}"

    rows: list[dict[str, object]] = []
    for item in items:
        row: dict[str, object] = {
            "start_time": dt_from_epoch_ms(item.start_ms, tz_name).isoformat(sep=" ", timespec="seconds"),
            "end_time": dt_from_epoch_ms(item.end_ms, tz_name).isoformat(sep=" ", timespec="seconds"),
            "duration": format_hhmmss(item.duration_seconds),
        }
        if isinstance(item, Trip):
            row |= {
                "kind": "trip",
                "place": f"{label(item.start_place_id)} → {label(item.end_place_id)}",
                "distance_m": round(item.travelled_distance_m, 1),
                "mode": item.transport_mode.value,
            }
        else:
            row |= {"kind": "visit", "place": label(item.place_id), "distance_m": None, "mode": ""}
        rows.append(row)
    return rows


def _params_form(base: DetectionParameters) -> DetectionParameters:
    vd, vm, ld = base.visit_detection, base.visit_merging, base.location_density
    st.subheader("停留点识别")
    search_distance = st.slider("search_distance_m（米）", 10.0, 500.0, float(vd.search_distance_m), step=5.0)
    min_points = st.slider("minimum_adjacent_points", 2, 50, int(vd.minimum_adjacent_points))
    min_stay = st.slider("minimum_stay_time_s（秒）", 30.0, 3600.0, float(vd.minimum_stay_time_s), step=30.0)
    merge_stay = st.slider(
        "max_merge_time_between_same_stay_points_s（秒）",
        0.0,
        3600.0,
        float(vd.max_merge_time_between_same_stay_points_s),
        step=30.0,
    )

    st.subheader("停留合并")
    merge_visits = st.slider(
        "max_merge_time_between_same_visits_s（秒）",
        0.0,
        7200.0,
        float(vm.max_merge_time_between_same_visits_s),
        step=60.0,
    )
    min_distance = st.slider(
        "min_distance_between_visits_m（米）", 20.0, 1000.0, float(vm.min_distance_between_visits_m), step=10.0
    )

    with st.expander("高级参数（通常不用改）", expanded=False):
        lookaround = st.number_input("search_duration_hours", value=float(vm.search_duration_hours), step=1.0)
        max_interp_distance = st.number_input(
            "max_interpolation_distance_m", value=float(ld.max_interpolation_distance_m), step=5.0
        )
        max_interp_gap = st.number_input(
            "max_interpolation_gap_minutes", value=float(ld.max_interpolation_gap_minutes), step=10.0
        )

    return DetectionParameters(
        visit_detection=VisitDetection(
            search_distance_m=float(search_distance),
            minimum_adjacent_points=int(min_points),
            minimum_stay_time_s=float(min_stay),
            max_merge_time_between_same_stay_points_s=float(merge_stay),
        ),
        visit_merging=VisitMerging(
            search_duration_hours=float(lookaround),
            max_merge_time_between_same_visits_s=float(merge_visits),
            min_distance_between_visits_m=float(min_distance),
        ),
        location_density=LocationDensity(
            max_interpolation_distance_m=float(max_interp_distance),
            max_interpolation_gap_minutes=float(max_interp_gap),
        ),
    )


def main() -> None:
    st.set_page_config(page_title="足迹时间线：停留与出行", layout="wide")
    st.title("足迹时间线：停留（visits）与出行（trips）")

    with st.sidebar:
        st.subheader("数据与时区")
        tz_name = st.text_input("时区（IANA）", value=DEFAULT_TZ)
        store_path = st.text_input("时间线存储文件", value="timeline.json")
        user = st.text_input("用户", value="me")

    p = Path(store_path)
    if not p.exists():
        st.error(f"找不到文件：{store_path!r}。请先运行 `python -m path_timeline import --csv Path.csv`。")
        return

    try:
        store = TimelineStore.from_dict(_load_snapshot(store_path, p.stat().st_mtime))
    except (ValueError, TypeError, KeyError) as exc:
        st.exception(exc)
        return

    pipeline = LocationPipeline(store, settings_from_config({"tz": tz_name}))
    places = {pl.place_id: pl for pl in store.places(user)}

    tab_timeline, tab_preview = st.tabs(["时间线", "参数预览"])

    with tab_timeline:
        today = datetime.now(tzinfo_from_name(tz_name)).date()
        c1, c2 = st.columns(2)
        start_d = c1.date_input("开始日期", value=today - timedelta(days=6))
        end_d = c2.date_input("结束日期", value=today)
        if start_d > end_d:
            st.error("开始日期不能晚于结束日期。")
        else:
            start_ms, end_ms = _range_to_epoch_ms(start_d, end_d, tz_name)
            items = pipeline.get_timeline(user, start_ms, end_ms - 1)
            visits = [i for i in items if not isinstance(i, Trip)]
            trips = [i for i in items if isinstance(i, Trip)]
            m1, m2, m3 = st.columns(3)
            m1.metric("停留段数", str(len(visits)))
            m2.metric("出行段数", str(len(trips)))
            m3.metric("出行总距离（km）", f"{sum(t.travelled_distance_m for t in trips) / 1000.0:.1f}")
            st.dataframe(_rows(items, places, tz_name), use_container_width=True, height=520)

    with tab_preview:
        st.caption("用新参数重新识别某一天（只在内存副本中计算，不写入存储文件）。")
        day = st.date_input("预览日期", value=datetime.now(tzinfo_from_name(tz_name)).date(), key="preview_day")
        params = _params_form(pipeline.lookup.current(user))

        if st.button("预览", type="primary", use_container_width=True):
            with st.spinner("正在识别 ..."):
                try:
                    preview = pipeline.preview_detection(user, params, day)
                except TimelineError as exc:
                    st.error(str(exc))
                    return
            day_start, day_end = _range_to_epoch_ms(day, day, tz_name)
            current = pipeline.get_timeline(user, day_start, day_end - 1)
            left, right = st.columns(2)
            left.markdown(f"**当前结果**（{len(current)} 段）")
            left.dataframe(_rows(current, places, tz_name), use_container_width=True, height=420)
            right.markdown(f"**预览结果**（{len(preview)} 段）")
            # the preview resolves places from scratch, so ids are not the stored ones
            right.dataframe(_rows(preview, {}, tz_name), use_container_width=True, height=420)


if __name__ == "__main__":
    main()

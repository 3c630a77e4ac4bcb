from datetime import date

import altair as alt
import pandas as pd
import requests
import streamlit as st

st.set_page_config(page_title="MindCapacity", layout="centered")

API_BASE = st.text_input("API base URL", value="http://127.0.0.1:8000")

if "token" not in st.session_state:
    st.session_state.token = None


def api_headers() -> dict:
    if st.session_state.token:
        return {"Authorization": f"Bearer {st.session_state.token}"}
    return {}


def api_url(path: str) -> str:
    return f"{API_BASE}{path}"


def safe_json(resp: requests.Response):
    content_type = resp.headers.get("content-type", "")
    if "application/json" not in content_type:
        return None
    try:
        return resp.json()
    except ValueError:
        return None


def show_response_error(resp: requests.Response, path: str, fallback_message: str) -> None:
    payload = safe_json(resp)
    if payload and isinstance(payload, dict):
        detail = payload.get("detail", fallback_message)
        st.error(f"{fallback_message} ({resp.status_code}) | {api_url(path)} | {detail}")
        return
    text = (resp.text or "").strip()
    st.error(f"{fallback_message} ({resp.status_code}) | {api_url(path)} | {text[:500] or 'No response body.'}")


def api_get(path: str, params=None):
    try:
        return requests.get(api_url(path), headers=api_headers(), params=params, timeout=10)
    except requests.RequestException as exc:
        st.error(f"Request failed: {exc}")
        return None


def api_post(path: str, json=None, data=None):
    try:
        return requests.post(api_url(path), headers=api_headers(), json=json, data=data, timeout=10)
    except requests.RequestException as exc:
        st.error(f"Request failed: {exc}")
        return None


def api_delete(path: str):
    try:
        return requests.delete(api_url(path), headers=api_headers(), timeout=10)
    except requests.RequestException as exc:
        st.error(f"Request failed: {exc}")
        return None


st.title("MindCapacity")
st.caption("Not a diagnosis. If you feel unsafe contact local emergency services.")

health_resp = api_get("/health")
if health_resp is None or not health_resp.ok:
    st.error("Backend check failed. Start backend with: uvicorn mindcapacity.backend.app.main:app --reload --port 8000")
    st.stop()

login_tab, calendar_tab, stats_tab = st.tabs(["Account", "Calendar", "Capacity"])

with login_tab:
    st.subheader("Sign up")
    with st.form("register_form"):
        reg_email = st.text_input("Email", key="reg_email")
        reg_password = st.text_input("Password", type="password", key="reg_password")
        if st.form_submit_button("Create account"):
            if not reg_email or not reg_password:
                st.warning("Enter an email and password.")
            else:
                resp = api_post("/auth/register", json={"email": reg_email, "password": reg_password})
                if resp is not None and resp.ok:
                    st.session_state.token = (safe_json(resp) or {}).get("access_token")
                    st.success("Account created. You are signed in.")
                elif resp is not None:
                    show_response_error(resp, "/auth/register", "Registration failed.")

    st.subheader("Login")
    with st.form("login_form"):
        login_email = st.text_input("Email", key="login_email")
        login_password = st.text_input("Password", type="password", key="login_password")
        if st.form_submit_button("Sign in"):
            resp = api_post("/auth/login", data={"username": login_email, "password": login_password})
            if resp is not None and resp.ok:
                st.session_state.token = (safe_json(resp) or {}).get("access_token")
                st.success("Signed in.")
            elif resp is not None:
                show_response_error(resp, "/auth/login", "Login failed.")

with calendar_tab:
    if not st.session_state.token:
        st.warning("Sign in on the Account tab to continue.")
    else:
        types_resp = api_get("/state-types")
        state_types = (safe_json(types_resp) or []) if types_resp is not None and types_resp.ok else []
        labels = {item["key"]: f"{item['label']} ({item['capacity_impact']:+d}%)" for item in state_types}

        st.subheader("How was your day?")
        with st.form("state_form"):
            entry_date = st.date_input("Date", value=date.today(), max_value=date.today())
            state_key = st.selectbox("State", list(labels), format_func=lambda key: labels[key])
            notes = st.text_area("Notes", max_chars=1000)
            if st.form_submit_button("Save"):
                resp = api_post(
                    "/states",
                    json={"entry_date": entry_date.isoformat(), "state_key": state_key, "notes": notes or None},
                )
                if resp is not None and resp.ok:
                    payload = safe_json(resp) or {}
                    st.success(f"Saved. Capacity is now {payload.get('current_capacity')}%.")
                elif resp is not None:
                    show_response_error(resp, "/states", "Unable to save state.")

        month = st.text_input("Month (YYYY-MM)", value=date.today().strftime("%Y-%m"))
        states_resp = api_get("/states", params={"month": month})
        if states_resp is not None and states_resp.ok:
            entries = safe_json(states_resp) or []
            if entries:
                for entry in entries:
                    cols = st.columns([3, 4, 1])
                    cols[0].write(entry["entry_date"])
                    cols[1].write(labels.get(entry["state_key"], entry["state_key"]))
                    if cols[2].button("Delete", key=f"delete_{entry['entry_date']}"):
                        resp = api_delete(f"/states/{entry['entry_date']}")
                        if resp is not None and resp.ok:
                            st.rerun()
                        elif resp is not None:
                            show_response_error(resp, "/states", "Unable to delete state.")
            else:
                st.info("No entries for this month.")
        elif states_resp is not None:
            show_response_error(states_resp, "/states", "Unable to load entries.")

with stats_tab:
    if not st.session_state.token:
        st.warning("Sign in on the Account tab to continue.")
    else:
        current_resp = api_get("/capacity/current")
        if current_resp is not None and current_resp.ok:
            current = safe_json(current_resp) or {}
            st.metric("Current capacity", f"{current.get('capacity', 100)}%", help=f"Risk: {current.get('risk_level')}")

        timeline_resp = api_get("/capacity/timeline")
        if timeline_resp is not None and timeline_resp.ok:
            timeline = safe_json(timeline_resp) or []
            if timeline:
                df = pd.DataFrame(timeline)
                df["date"] = pd.to_datetime(df["date"])
                chart = (
                    alt.Chart(df)
                    .mark_line(point=True)
                    .encode(
                        x=alt.X("date:T", title="Date"),
                        y=alt.Y("capacity:Q", title="Capacity %", scale=alt.Scale(domain=[0, 100])),
                        tooltip=["date:T", "capacity:Q", "change:Q"],
                    )
                )
                st.altair_chart(chart, use_container_width=True)
            else:
                st.info("No capacity history yet.")

        st.subheader("Forecast")
        forecast_resp = api_get("/capacity/forecast", params={"days": 7})
        if forecast_resp is not None and forecast_resp.ok:
            st.dataframe(pd.DataFrame(safe_json(forecast_resp) or []), use_container_width=True)

        st.subheader("Breakdown analysis (90 days)")
        analysis_resp = api_get("/capacity/breakdowns", params={"days": 90})
        if analysis_resp is not None and analysis_resp.ok:
            analysis = safe_json(analysis_resp) or {}
            cols = st.columns(3)
            cols[0].metric("Breakdowns", analysis.get("total_breakdowns", 0))
            cols[1].metric("Triggered by low capacity", f"{analysis.get('percentage_triggered', 0)}%")
            cols[2].metric("Longest stress streak", analysis.get("longest_stress_streak", 0))

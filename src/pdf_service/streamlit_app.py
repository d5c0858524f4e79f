import io
import os
from pathlib import Path

import requests
import streamlit as st

API_BASE = os.getenv("PDFER_API_BASE", os.getenv("API_BASE", "http://localhost:8084")).rstrip("/")
API_KEY = os.getenv("PDFER_API_KEY", "")
# conversions wait in the server-side queue, so allow a long read timeout
CONVERT_TIMEOUT = float(os.getenv("PDFER_UI_CONVERT_TIMEOUT", "900"))


def _auth_headers() -> dict[str, str]:
    if not API_KEY or API_KEY.startswith("$argon2"):
        return {}
    return {"Authorization": f"Bearer {API_KEY}"}


def _error_message(resp: requests.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return f"{resp.status_code} {resp.text}"
    if isinstance(detail, dict):
        return f"{resp.status_code} {detail.get('message', '')}"
    return f"{resp.status_code} {detail}"


def _convert(uploaded_file: io.BytesIO) -> bytes | None:
    try:
        files = {"attachment": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/octet-stream")}
        resp = requests.post(f"{API_BASE}/convert", files=files, headers=_auth_headers(), timeout=CONVERT_TIMEOUT)
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Conversion failed: {_error_message(resp)}"
        return None
    return resp.content


def _fetch_health() -> dict[str, object] | None:
    try:
        resp = requests.get(f"{API_BASE}/health", timeout=10)
    except requests.RequestException as e:
        st.session_state["error"] = f"Status check failed: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Status error: {_error_message(resp)}"
        return None
    return resp.json()


def _reset_queue() -> int | None:
    try:
        resp = requests.get(f"{API_BASE}/reset", headers=_auth_headers(), timeout=10)
    except requests.RequestException as e:
        st.session_state["error"] = f"Reset failed: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Reset failed: {_error_message(resp)}"
        return None
    # body is "Removed files: <n>"
    return int(resp.text.rsplit(":", 1)[-1].strip())


def main() -> None:
    st.set_page_config(page_title="PDF Conversion Service", page_icon="📄", layout="centered")
    st.title("📄 PDF Conversion Service")
    st.caption(f"API base: {API_BASE}")
    st.session_state.pop("error", None)

    health = _fetch_health()
    if health:
        col1, col2, col3 = st.columns(3)
        col1.metric("Queued files", health.get("queued", 0))
        col2.metric("Engine", str(health.get("engine", "unknown")))
        col3.metric("Engine restarts", health.get("engine_restarts", 0))

    if st.button("Reset queue", type="secondary"):
        removed = _reset_queue()
        if removed is not None:
            st.toast(f"Removed {removed} queued files", icon="🧹")

    uploaded = st.file_uploader("Upload a document (DOCX, PPTX, XLSX, ODT, ...)")
    if uploaded and st.button("Convert to PDF", type="primary"):
        with st.spinner("Waiting for the conversion queue..."):
            pdf = _convert(uploaded)
        if pdf is not None:
            st.success("Conversion complete!")
            st.download_button(
                label="Download PDF",
                data=pdf,
                file_name=f"{Path(uploaded.name).stem}.pdf",
                mime="application/pdf",
            )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()

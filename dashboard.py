# dashboard.py
from collections import Counter
from html import escape

from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from config import load_config
from storage import JobStore

app = FastAPI()


# the web view only reads: no default bj.toml, no ledger directories
def get_config():
    return load_config(write_default=False)


def get_store(cfg=Depends(get_config)):
    return JobStore.from_config(cfg, create=False)


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
  .failed, .orphaned, .killed { color: #D32F2F; }
  .done { color: #388E3C; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Jobs</a>
        <a href="/jobs.json">🧾 JSON</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _job_json(job):
    data = job.to_dict()
    data["status"] = job.status
    return data


def _fmt_time(ts):
    return ts.astimezone().strftime("%Y-%m-%d %H:%M:%S") if ts else "-"


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(store: JobStore = Depends(get_store)):
    jobs = store.list()[:50]
    counts = Counter(j.status for j in jobs)

    cards = '<div class="cards">' + "".join(
        f'<div class="card"><h3>{status.capitalize()}</h3><p>{counts.get(status, 0)}</p></div>'
        for status in ("running", "done", "failed", "killed", "orphaned", "incomplete")
    ) + "</div>"

    table_html = """
    <h2>Recent jobs</h2>
    <table>
      <tr><th>ID</th><th>Status</th><th>Command</th><th>Started</th><th>Finished</th><th>Exit</th></tr>
    """
    for j in jobs:
        exit_code = j.exit_code if j.exit_code is not None else "-"
        table_html += (
            f"<tr><td><a href='/job/{j.id}'>{j.id}</a></td><td class='{j.status}'>{j.status}</td>"
            f"<td>{escape(j.command)}</td><td>{_fmt_time(j.start_time)}</td><td>{_fmt_time(j.end_time)}</td>"
            f"<td>{exit_code}</td></tr>"
        )
    table_html += "</table>"
    if not jobs:
        table_html += "<p class='muted'>No jobs yet. Start one with <code>bj run</code>.</p>"

    return page("📊 bj jobs", cards + table_html)


# ---------- JSON APIs ----------
@app.get("/jobs.json", response_class=JSONResponse)
def jobs_json(store: JobStore = Depends(get_store)):
    return [_job_json(j) for j in store.list()]


@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(store: JobStore = Depends(get_store)):
    jobs = store.list()
    counts = Counter(j.status for j in jobs)
    finished = [j.duration.total_seconds() for j in jobs if j.exit_code == 0]
    avg_duration = sum(finished) / len(finished) if finished else None
    return {"total": len(jobs), **counts, "avg_duration": avg_duration}


# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page(cfg=Depends(get_config)):
    body = """
      <h2>Configuration</h2>
      <table>
        <tr><th>Key</th><th>Value</th></tr>
    """
    for key, value in cfg.as_dict().items():
        body += f"<tr><td>{key}</td><td>{escape(str(value))}</td></tr>"
    body += f"</table><p class='muted'>Edit {escape(str(cfg.base_dir / 'bj.toml'))} to change values.</p>"
    return page("⚙ Config", body)


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: int, store: JobStore = Depends(get_store)):
    job = store.get(job_id)
    if job is None:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {job_id} not found.</p>"), status_code=404)

    exit_code = job.exit_code if job.exit_code is not None else "-"
    body = f"""
      <h2>Job {job.id}</h2>
      <div class="cards">
        <div class="card"><b>Status</b><p class="{job.status}">{job.status}</p></div>
        <div class="card"><b>Exit code</b><p>{exit_code}</p></div>
        <div class="card"><b>PID</b><p>{job.pid or '-'}</p></div>
        <div class="card"><b>Duration</b><p>{int(job.duration.total_seconds())}s</p></div>
      </div>

      <h3>Command</h3>
      <p class="muted">{escape(job.command)}</p>

      <h3>Details</h3>
      <table>
        <tr><th>Directory</th><td>{escape(job.working_dir)}</td></tr>
        <tr><th>Started</th><td>{_fmt_time(job.start_time)}</td></tr>
        <tr><th>Finished</th><td>{_fmt_time(job.end_time)}</td></tr>
        <tr><th>Log file</th><td>{escape(job.log_file) or '-'}</td></tr>
      </table>

      <p><a href="/job/{job.id}/log">📄 View log</a></p>
    """
    return page(f"🔎 Job {job.id}", body)


# ---------- Log ----------
@app.get("/job/{job_id}/log", response_class=PlainTextResponse)
def job_log(job_id: int, store: JobStore = Depends(get_store)):
    job = store.get(job_id)
    if job is None:
        return PlainTextResponse(f"job {job_id} not found", status_code=404)
    try:
        with open(job.log_file, encoding="utf-8", errors="replace") as f:
            return PlainTextResponse(f.read())
    except OSError:
        return PlainTextResponse("(no output)")

"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Device Orchestrator</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --running: #58a6ff; --completed: #3fb950; --failed: #f85149; --cancelled: #8b949e;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }
  .layout { display: grid; grid-template-columns: 320px 1fr; gap: 16px; }
  .run-list { display: flex; flex-direction: column; gap: 2px; }
  .run-card { background: var(--surface); border: 1px solid var(--border); border-radius: 8px;
              padding: 10px 14px; cursor: pointer; }
  .run-card.selected { border-color: var(--running); }
  .run-task { font-size: 14px; font-weight: 600; }
  .run-meta { font-size: 12px; color: var(--text-dim); }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.running { background: rgba(88,166,255,0.15); color: var(--running); }
  .badge.completed { background: rgba(63,185,80,0.15); color: var(--completed); }
  .badge.failed { background: rgba(248,81,73,0.15); color: var(--failed); }
  .badge.cancelled { background: rgba(139,148,158,0.15); color: var(--cancelled); }
  .detail { background: var(--surface); border: 1px solid var(--border); border-radius: 8px; padding: 16px; }
  .detail h2 { font-size: 16px; margin-bottom: 8px; }
  .detail h3 { font-size: 13px; margin: 16px 0 6px; color: var(--text-muted); }
  .summary-text { font-size: 13px; white-space: pre-wrap; }
  table { width: 100%; border-collapse: collapse; font-size: 13px; }
  td, th { text-align: left; padding: 4px 6px; border-bottom: 1px solid var(--border); }
  pre { background: var(--bg); padding: 10px; border-radius: 6px; font-size: 12px; overflow-x: auto; }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Device Orchestrator</h1>
    <button onclick="loadRuns()">Refresh</button>
  </header>
  <div class="layout">
    <div id="runs" class="run-list"><div class="empty">Loading...</div></div>
    <div id="detail"><div class="empty"><h3>Select a run</h3></div></div>
  </div>
</div>

<script>
let currentRun = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadRuns() {
  const container = document.getElementById('runs');
  const runs = await fetchJSON('/api/runs?limit=50');
  if (!runs || runs.length === 0) {
    container.innerHTML = '<div class="empty"><h3>No runs yet</h3><p>Start one with <code>devo run</code></p></div>';
    return;
  }
  container.innerHTML = runs.map(r => `
    <div class="run-card ${r.id === currentRun ? 'selected' : ''}" onclick="loadRun(${r.id})">
      <div class="run-task">${esc(r.task)}</div>
      <div class="run-meta"><span class="badge ${r.status}">${esc(r.status)}</span>
        #${r.id} &middot; ${esc(r.phase)} &middot; ${esc(r.started_at)}</div>
    </div>`).join('');
  if (currentRun === null) loadRun(runs[0].id);
}

async function loadRun(runId) {
  currentRun = runId;
  const run = await fetchJSON(`/api/runs/${runId}`);
  const detail = document.getElementById('detail');
  if (!run) { detail.innerHTML = '<div class="empty"><h3>Run not found</h3></div>'; return; }

  let html = `<div class="detail">
    <h2>${esc(run.task)}</h2>
    <span class="badge ${run.status}">${esc(run.status)}</span>`;
  if (run.summary) html += `<h3>Summary</h3><div class="summary-text">${esc(run.summary)}</div>`;
  if (run.results.length > 0) {
    html += '<h3>Sub-tasks</h3><table><tr><th>Task</th><th>Result</th><th>Steps</th><th>Surface</th><th>Time</th></tr>';
    for (const r of run.results) {
      html += `<tr><td>${r.success ? '&#10003;' : '&#10007;'} <code>${esc(r.task_id)}</code></td>
        <td>${esc(r.result)}</td><td>${r.steps_executed}</td><td>${r.surface_id}</td>
        <td>${(r.execution_time_ms / 1000).toFixed(1)}s</td></tr>`;
    }
    html += '</table>';
  }
  if (run.flow_diagram) html += `<h3>Flow</h3><pre>${esc(run.flow_diagram)}</pre>`;
  if (run.events.length > 0) {
    html += '<h3>Events</h3><table>';
    for (const e of run.events) {
      html += `<tr><td>${esc(e.created_at)}</td><td>${esc(e.event_type)}</td>
        <td>${esc(e.task_id)}</td><td>${esc(e.detail)}</td></tr>`;
    }
    html += '</table>';
  }
  detail.innerHTML = html + '</div>';
  loadRuns();
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

loadRuns();
setInterval(loadRuns, 10000);
</script>
</body>
</html>"""

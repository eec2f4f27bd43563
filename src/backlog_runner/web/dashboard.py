"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Backlog Runner</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --info: #58a6ff; --success: #3fb950; --warning: #d29922; --error: #f85149;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  .controls { display: flex; gap: 8px; }
  .controls button { background: var(--surface); color: var(--text); border: 1px solid var(--border);
                     padding: 6px 12px; border-radius: 6px; font-size: 13px; cursor: pointer; }
  .controls button:hover { border-color: var(--text-muted); }
  .controls button:disabled { color: var(--text-dim); cursor: default; }

  .status { background: var(--surface); border: 1px solid var(--border);
            border-radius: 8px; padding: 16px; margin-bottom: 20px; font-size: 13px;
            color: var(--text-muted); display: flex; gap: 20px; flex-wrap: wrap; }
  .status strong { color: var(--text); }

  h2 { font-size: 15px; margin: 20px 0 10px; }
  .task-card { background: var(--surface); border: 1px solid var(--border);
               border-radius: 8px; padding: 10px 16px; margin-bottom: 2px; }
  .task-title { font-weight: 600; font-size: 14px; }
  .task-id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .badge { display: inline-block; padding: 1px 8px; border-radius: 12px; font-size: 11px;
           font-weight: 600; background: rgba(139,148,158,0.15); color: var(--text-muted); }

  .events { font-family: monospace; font-size: 12px; }
  .event { padding: 2px 0; border-bottom: 1px solid var(--border); }
  .event .time { color: var(--text-dim); margin-right: 8px; }
  .event.info .kind { color: var(--info); }
  .event.success .kind { color: var(--success); }
  .event.warning .kind { color: var(--warning); }
  .event.error .kind { color: var(--error); }
  .empty { text-align: center; padding: 24px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Backlog Runner</h1>
    <div class="controls">
      <button id="start-next" onclick="post('/api/start-next')">Start next</button>
      <button id="auto" onclick="post('/api/auto')">Toggle auto</button>
      <button onclick="post('/api/snapshot')">Snapshot</button>
      <button onclick="if (confirm('Roll back the last task commit?')) post('/api/rollback')">Rollback</button>
    </div>
  </header>
  <div class="status" id="status"></div>
  <h2>Tasks</h2>
  <div id="tasks"></div>
  <h2>Events</h2>
  <div class="events" id="events"></div>
</div>
<script>
async function fetchJSON(path, options) {
  const res = await fetch(path, options);
  return res.json();
}

async function post(path) {
  await fetchJSON(path, {method: 'POST'});
  refresh();
}

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s == null ? '' : String(s);
  return d.innerHTML;
}

async function refresh() {
  const [status, tasks, events] = await Promise.all([
    fetchJSON('/api/status'),
    fetchJSON('/api/tasks'),
    fetchJSON('/api/events?limit=50'),
  ]);

  const current = status.current_task ? `${esc(status.current_task.title)}` : 'none';
  document.getElementById('status').innerHTML =
    `<span>State: <strong>${esc(status.state)}</strong></span>` +
    `<span>Auto: <strong>${status.auto ? 'on' : 'off'}</strong></span>` +
    `<span>Current: <strong>${current}</strong></span>` +
    `<span>Completed: <strong>${status.completed}</strong></span>` +
    `<span>Errors: <strong>${status.errors}</strong></span>`;
  document.getElementById('start-next').disabled = status.busy;

  document.getElementById('tasks').innerHTML = tasks.length
    ? tasks.map(t => `<div class="task-card"><span class="badge">${esc(t.status || 'no status')}</span>
        <span class="task-title">${esc(t.title)}</span> <span class="task-id">${esc(t.id)}</span></div>`).join('')
    : '<div class="empty">No tasks in the queue.</div>';

  document.getElementById('events').innerHTML = events.slice().reverse()
    .map(e => `<div class="event ${esc(e.kind)}"><span class="time">${esc(e.timestamp.slice(11, 19))}</span>
        <span class="kind">[${esc(e.source)}]</span> ${esc(e.message)}</div>`).join('');
}

refresh();
setInterval(refresh, 3000);
</script>
</body>
</html>"""

"""Challenge page. Carries the challenge material only, never the destination."""

import json
from string import Template

from pow import Challenge

_CHALLENGE_TEMPLATE = Template("""\
<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="robots" content="noindex,nofollow,noarchive,nosnippet">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>One moment…</title>
  <style>body{background:#fff;margin:0;font-family:system-ui,sans-serif}</style>
</head>
<body>
<noscript>Please enable JavaScript to continue.</noscript>
<script>
(function () {
  var material = $material, difficulty = $difficulty, param = $param;
  var fallbackMs = $fallback_ms, fallbackEnabled = $fallback_enabled;
  var moves = 0, done = false;
  addEventListener("pointermove", function () { moves++; }, {passive: true});

  function signals() {
    return {
      screen: screen.width + "x" + screen.height,
      hardwareConcurrency: navigator.hardwareConcurrency || null,
      timezone: Intl.DateTimeFormat().resolvedOptions().timeZone || null,
      pointerMoves: moves,
      webdriver: navigator.webdriver === true
    };
  }

  function zeroBits(buf) {
    var bytes = new Uint8Array(buf), n = 0;
    for (var i = 0; i < bytes.length; i++) {
      if (bytes[i] === 0) { n += 8; continue; }
      return n + Math.clz32(bytes[i]) - 24;
    }
    return n;
  }

  async function solve() {
    var enc = new TextEncoder();
    for (var i = 0; ; i++) {
      var digest = await crypto.subtle.digest("SHA-256", enc.encode(material + i));
      if (zeroBits(digest) >= difficulty) return String(i);
    }
  }

  async function submit(nonce, fallback) {
    var res = await fetch(location.pathname, {
      method: "POST",
      headers: {"content-type": "application/json"},
      credentials: "same-origin",
      body: JSON.stringify({challenge: material, nonce: nonce, signals: signals(), fallback: fallback})
    });
    if (!res.ok) return false;
    var body = await res.json();
    done = true;
    location.replace(location.pathname + "?" + param + "=" + encodeURIComponent(body.token));
    return true;
  }

  if (fallbackEnabled) {
    setTimeout(function () { if (!done) submit("", true).catch(function () {}); }, fallbackMs);
  }
  setTimeout(function () {
    solve().then(function (nonce) { return submit(nonce, false); }).catch(function () {});
  }, 200);
})();
</script>
</body>
</html>
""")


def _js(value) -> str:
    return json.dumps(value).replace("<", "\\u003c")


def render_challenge(challenge: Challenge, token_param: str, fallback_enabled: bool,
                     fallback_delay_seconds: int) -> str:
    return _CHALLENGE_TEMPLATE.substitute(
        material=_js(challenge.material),
        difficulty=int(challenge.difficulty),
        param=_js(token_param),
        # Slightly later than the server-side minimum so the first try is accepted
        fallback_ms=int(fallback_delay_seconds * 1000) + 500,
        fallback_enabled=_js(bool(fallback_enabled)),
    )

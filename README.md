# wlampctl

wlampctl is a small command-line tool for the Apache server that comes with
XAMPP on Windows. It points Apache at a project folder. It can then start,
stop, restart and check the server for that folder.

It uses the Windows tools `tasklist`, `taskkill`, `netstat` and `sc`. It
also uses the `psutil` library to inspect processes.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra:

```
pip install ".[test]"
pytest
```

## Finding XAMPP

wlampctl looks for a directory that contains `apache\bin\httpd.exe`.

1. It checks the `WLAMPCTL_XAMPP_ROOT` environment variable first. If the
   variable is set but does not point to such a directory, that is an error.
2. Otherwise it walks up from the location of the running program. At each
   directory on the way, it also checks for a `xampp` folder next to it.

This command prints the directory it found:

```
wlampctl root
```

## Serving a project

Run these commands from your project folder:

```
wlampctl apache register --DocumentRoot public --port 8080
wlampctl apache start
```

`register` does three things:

- It saves the settings to `.wlampctl-project.conf` in the current directory. The file holds `PROJECT_ID`, `PORT` and `DOCUMENT_ROOT`.
- It writes a `Listen` line and a `<VirtualHost>` block to `apache\conf\extra\wlampctl-active.conf`.
- The first time it runs, it adds an `Include` line for that file to `httpd-vhosts.conf`.

`start` does the same steps and then launches Apache.

Settings are chosen in this order:

1. Values given on the command line.
2. Values saved in the project file.
3. The defaults: the current directory, and a free port. Common ports such as 80, 8080 and 3000 are tried first, then ports from 8080 upward.

The document root must exist. It is saved with forward slashes.

If the chosen port is in use and this installation's Apache is not running, wlampctl asks for a different port. Pressing Enter without a port cancels the command.

Options for `start`:

- `--DocumentRoot PATH`: the directory to serve.
- `--port N`: the port to listen on.
- `--output`: run Apache in this terminal and show its output. Press Enter to stop it.

If `--output` is not given, Apache starts hidden in the background. wlampctl then waits for its PID file to name a running `httpd.exe` from this installation. If Apache is already running, `start` does not start a second copy; run `restart` to apply a new configuration.

## Other commands

```
wlampctl apache stop
wlampctl apache restart
wlampctl apache status [--verbose] [--url URL] [--watch 2s] [--since 10m]
wlampctl apache logs      # open apache\logs\error.log
wlampctl apache admin     # open http://localhost/ in the browser
wlampctl apache config    # open apache\conf\httpd.conf
wlampctl version          # show wlampctl, Apache and PHP versions
wlampctl --version
```

`stop` ends the Apache process tree with `taskkill`, waits for the process to exit, and removes the PID file. `restart` stops Apache and starts it again in the background.

`status` reports the following:

- whether Apache is running, and its uptime
- the local addresses it is using
- the state of the Windows service, if one of `Apache2.4`, `Apache24`, `Apache2.2` or `ApacheHTTPServer` exists
- the result of `httpd -t`
- the result of an HTTP health check

The health check sends a GET request to the URL given with `--url`. Without `--url` it uses `http://localhost/server-status?auto`. Only `http://` URLs are checked; with `--verbose`, other URLs are reported as skipped. `--verbose` also prints the error output of `httpd -t` when the configuration check fails. `--since` is accepted but has no effect.

`status` exits with one of these codes:

- `0`: healthy, or not running with a valid configuration
- `1`: starting or degraded
- `3`: the configuration check failed

Apache counts as starting or degraded in these cases:

- it has no open ports
- the health check did not return 200
- the Windows service reports that it is stopped

With `--watch`, the report repeats at the given interval until interrupted. The interval can be written as `500ms`, `2s`, `1m`, or a bare number of seconds.

On other failures, wlampctl prints `Error: ...` to standard error and exits with code 1.
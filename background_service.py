#!/usr/bin/env python3
"""
Background Service for the Afternote verification sweep
Runs the daily scheduled-verification sweep as a daemon, or once on demand
"""

import sys
import os
import time
import signal
import logging
import subprocess

from death_verification_system import DeathVerificationSystem, configure_logging, load_config

logger = logging.getLogger(__name__)


class SweepDaemon:
    """Background daemon service running the verification sweep scheduler"""

    def __init__(self, config_file='config.json', pidfile=None):
        self.config_file = config_file
        self.pidfile = pidfile
        self.system = None

    def _pidfile(self):
        if self.pidfile is None:
            self.pidfile = load_config(self.config_file)['pidfile']
        return self.pidfile

    def daemonize(self):
        """Convert process to daemon"""
        try:
            # Fork first child
            pid = os.fork()
            if pid > 0:
                sys.exit(0)  # Exit parent
        except OSError as e:
            sys.stderr.write(f"Fork #1 failed: {e}\n")
            sys.exit(1)

        # Decouple from parent environment
        os.setsid()
        os.umask(0o022)

        # Fork second child
        try:
            pid = os.fork()
            if pid > 0:
                sys.exit(0)  # Exit second parent
        except OSError as e:
            sys.stderr.write(f"Fork #2 failed: {e}\n")
            sys.exit(1)

        # Redirect standard file descriptors
        sys.stdout.flush()
        sys.stderr.flush()

        with open(os.devnull, 'r') as si:
            os.dup2(si.fileno(), sys.stdin.fileno())
        with open(os.devnull, 'a+') as so:
            os.dup2(so.fileno(), sys.stdout.fileno())
            os.dup2(so.fileno(), sys.stderr.fileno())

        with open(self._pidfile(), 'w') as f:
            f.write(f"{os.getpid()}\n")

    def signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self.cleanup()
        sys.exit(0)

    def cleanup(self):
        """Stop the scheduler and remove the pidfile"""
        if self.system is not None:
            self.system.stop()
        try:
            os.remove(self._pidfile())
        except FileNotFoundError:
            pass

    def read_pid(self):
        try:
            with open(self._pidfile(), 'r') as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def is_alive(self, pid) -> bool:
        try:
            os.kill(pid, 0)  # Check if process exists
            return True
        except OSError:
            return False

    def start(self):
        """Start the daemon"""
        pid = self.read_pid()
        if pid is not None:
            if self.is_alive(pid):
                print("Sweep daemon already running!")
                return
            os.remove(self._pidfile())

        print("Starting Afternote sweep daemon...")
        self.config_file = os.path.abspath(self.config_file)
        self.daemonize()
        self.run_daemon()

    def stop(self):
        """Stop the daemon"""
        pid = self.read_pid()
        if pid is None:
            print("Sweep daemon not running!")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            time.sleep(1)
            if self.is_alive(pid):
                os.kill(pid, signal.SIGKILL)  # Force kill
        except OSError:
            pass

        try:
            os.remove(self._pidfile())
        except FileNotFoundError:
            pass

        print("Afternote sweep daemon stopped.")

    def restart(self):
        """Restart the daemon"""
        self.stop()
        time.sleep(2)
        self.start()

    def status(self):
        """Check daemon status"""
        pid = self.read_pid()
        if pid is None:
            print("Sweep daemon is not running")
            return False

        if self.is_alive(pid):
            print(f"Sweep daemon is running (PID: {pid})")
            return True

        print("Sweep daemon is not running (stale pidfile)")
        os.remove(self._pidfile())
        return False

    def run_daemon(self):
        """Main daemon loop"""
        try:
            self.system = DeathVerificationSystem.from_config_file(self.config_file)
        except (OSError, ValueError) as e:
            logging.error(f"Failed to start daemon: {e}")
            sys.exit(1)

        configure_logging(self.system.config.get('log_file'))
        signal.signal(signal.SIGTERM, self.signal_handler)
        signal.signal(signal.SIGINT, self.signal_handler)

        self.system.start()
        logger.info("Afternote sweep daemon started successfully")
        while self.system.scheduler.is_running:
            time.sleep(60)
        logger.error("Sweep scheduler thread exited unexpectedly")
        self.cleanup()
        sys.exit(1)

    def sweep_once(self, now=None):
        """Run a single sweep in the foreground, for operational recovery"""
        system = DeathVerificationSystem({**load_config(self.config_file), 'async_notifications': False})
        configure_logging(system.config.get('log_file'))
        report = system.engine.sweep_resolve(now)
        print(f"Examined {report.examined} scheduled verifications: "
              f"{len(report.resolved)} resolved, {len(report.skipped)} not due, "
              f"{len(report.recovered)} recovered, {len(report.failed)} failed")
        return report


def install_systemd_service(config_file):
    """Install as systemd service on Linux"""
    service_content = f"""[Unit]
Description=Afternote death verification sweep
After=network.target

[Service]
Type=simple
User={os.getenv('USER', 'root')}
WorkingDirectory={os.getcwd()}
ExecStart={sys.executable} {os.path.abspath(__file__)} run {os.path.abspath(config_file)}
Restart=always
RestartSec=10

[Install]
WantedBy=multi-user.target
"""

    service_path = '/etc/systemd/system/afternote-sweep.service'
    try:
        with open(service_path, 'w') as f:
            f.write(service_content)
    except OSError as e:
        print(f"Failed to install systemd service: {e}")
        return False

    # Enable and start service
    subprocess.run(['sudo', 'systemctl', 'daemon-reload'])
    subprocess.run(['sudo', 'systemctl', 'enable', 'afternote-sweep'])
    subprocess.run(['sudo', 'systemctl', 'start', 'afternote-sweep'])

    print("Systemd service installed and started!")
    print("Use: sudo systemctl status afternote-sweep")
    return True


USAGE = "Usage: python background_service.py {start|stop|restart|status|run|sweep [NOW]|install-systemd} [CONFIG]"


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("Afternote - Death Verification Sweep Service")
        print(USAGE)
        return 2

    command = argv[0]
    if command == 'sweep':
        now = argv[1] if len(argv) > 1 else None
        config_file = argv[2] if len(argv) > 2 else 'config.json'
        report = SweepDaemon(config_file).sweep_once(now)
        return 1 if report.failed else 0

    config_file = argv[1] if len(argv) > 1 else 'config.json'
    daemon = SweepDaemon(config_file)

    if command == 'start':
        daemon.start()
    elif command == 'stop':
        daemon.stop()
    elif command == 'restart':
        daemon.restart()
    elif command == 'status':
        return 0 if daemon.status() else 1
    elif command == 'run':
        daemon.run_daemon()
    elif command == 'install-systemd':
        return 0 if install_systemd_service(config_file) else 1
    else:
        print(USAGE)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

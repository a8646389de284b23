import json
import logging
import sqlite3

import click

from .alerts import dedupe_alerts, send_alerts
from .campaigns import add_tweet, check_and_complete_campaigns, create_campaign
from .db import init_db, connect_db
from .models import JOB_KINDS, JOB_STATES
from .oauth_state import purge_expired_states
from .queue import enqueue, get_job_queue_stats, trigger
from .repository import cleanup_old_jobs, get_config, list_jobs, requeue_stale, set_config
from .transports import ConsoleTransport, SlackWebhookTransport
from .utils import parse_delay_to_seconds
from .worker import process_jobs, start_workers

FAILURES = (ValueError, RuntimeError, sqlite3.Error)


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group(help="campaignwatch: campaign job pipeline and alerting")
@click.option("--db", "db_path", envvar="CAMPAIGNWATCH_DB", default=None, help="SQLite database file")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db": db_path}
    # Ensure DB/schema exist before any command runs
    try:
        init_db(db_path)
    except sqlite3.Error as e:
        _fail(f"cannot open database: {e}")


# ---------- Campaigns ----------
@cli.group("campaign", help="Campaigns and tracked tweets")
def campaign_group():
    pass


@campaign_group.command("add")
@click.option("--id", "campaign_id", required=True)
@click.option("--name", "launch_name", required=True)
@click.option("--start", "start_date", required=True, help="ISO datetime (UTC if no offset)")
@click.option("--end", "end_date", required=True, help="ISO datetime (UTC if no offset)")
@click.option("--threshold", type=float, default=0.0, show_default=True, help="Minimum importance for alerts")
@click.option("--channel", "channels", multiple=True, type=click.Choice(["slack", "email"]))
@click.option("--email", "client_email", default=None)
@click.option("--spacing", "alert_spacing_minutes", type=int, default=None,
              help="Minutes between alerts (default: derived from the schedule interval)")
@click.pass_obj
def campaign_add(obj, campaign_id, launch_name, start_date, end_date, threshold, channels, client_email,
                 alert_spacing_minutes):
    conn = connect_db(obj["db"])
    try:
        create_campaign(
            conn,
            campaign_id=campaign_id,
            launch_name=launch_name,
            start_date=start_date,
            end_date=end_date,
            importance_threshold=threshold,
            channels=channels,
            client_email=client_email,
            alert_spacing_minutes=alert_spacing_minutes,
        )
        click.secho(f"Campaign {campaign_id} created.", fg="green")
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@campaign_group.command("add-tweet")
@click.argument("campaign_id")
@click.argument("tweet_id")
@click.option("--category", default="main_twt", show_default=True,
              type=click.Choice(["main_twt", "influencer_twt", "investor_twt"]))
@click.pass_obj
def campaign_add_tweet(obj, campaign_id, tweet_id, category):
    conn = connect_db(obj["db"])
    try:
        add_tweet(conn, campaign_id, tweet_id, category)
        click.secho(f"Tracking tweet {tweet_id} for {campaign_id}.", fg="green")
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@campaign_group.command("check", help="Complete campaigns whose monitor window has ended")
@click.pass_obj
def campaign_check(obj):
    conn = connect_db(obj["db"])
    try:
        _echo_json(check_and_complete_campaigns(conn))
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Jobs ----------
@cli.command("trigger", help="Complete ended campaigns, then enqueue jobs for active ones")
@click.pass_obj
def trigger_cmd(obj):
    conn = connect_db(obj["db"])
    try:
        _echo_json(trigger(conn))
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("enqueue", help="Add a single job to the queue")
@click.option("--campaign", "campaign_id", required=True)
@click.option("--kind", required=True, type=click.Choice(JOB_KINDS))
@click.option("--payload", default="{}", show_default=True, help="JSON payload for the job kind")
@click.pass_obj
def enqueue_cmd(obj, campaign_id, kind, payload):
    conn = connect_db(obj["db"])
    try:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"payload is not valid JSON: {e}")
        job = enqueue(conn, campaign_id, kind, data)
        click.secho(f"Enqueued job {job.id} ({kind}) for {campaign_id}", fg="green")
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("list")
@click.option("--status", type=click.Choice(JOB_STATES), default=None)
@click.option("--campaign", "campaign_id", default=None)
@click.pass_obj
def list_cmd(obj, status, campaign_id):
    conn = connect_db(obj["db"])
    try:
        jobs = list_jobs(conn, status=status, campaign_id=campaign_id)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>8} | {j.status:<10} | {j.kind:<17} | campaign={j.campaign_id} "
            f"| retries={j.retry_count}/{j.max_retries} | retry_after={j.retry_after} "
            f"| payload={json.dumps(j.payload)} | last_error={j.last_error}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(obj):
    conn = connect_db(obj["db"])
    try:
        _echo_json(get_job_queue_stats(conn))
    finally:
        conn.close()


@cli.group("jobs", help="Queue maintenance")
def jobs_group():
    pass


@jobs_group.command("requeue-stale")
@click.option("--older-than-minutes", type=float, default=None,
              help="Liveness timeout (default: stale_claim_minutes config)")
@click.pass_obj
def jobs_requeue_stale(obj, older_than_minutes):
    conn = connect_db(obj["db"])
    try:
        if older_than_minutes is None:
            older_than_minutes = float(get_config(conn)["stale_claim_minutes"])
        _echo_json(requeue_stale(conn, older_than_minutes))
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@jobs_group.command("cleanup")
@click.option("--older-than", "older_than", default="7d", show_default=True,
              help="Delete completed jobs older than this, e.g. 12h, 7d")
@click.pass_obj
def jobs_cleanup(obj, older_than):
    conn = connect_db(obj["db"])
    try:
        deleted = cleanup_old_jobs(conn, parse_delay_to_seconds(older_than))
        click.secho(f"Deleted {deleted} completed job(s).", fg="green")
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@jobs_group.command("purge-oauth-states")
@click.pass_obj
def jobs_purge_oauth_states(obj):
    conn = connect_db(obj["db"])
    try:
        purged = purge_expired_states(conn)
        click.secho(f"Purged {purged} expired OAuth state(s).", fg="green")
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Run job handlers")
def worker_group():
    pass


@worker_group.command("run", help="Process one batch of due jobs and print stats")
@click.option("--max-jobs", type=int, default=None, help="Default: max_jobs config")
@click.option("--concurrency", type=int, default=None, help="Default: concurrency config")
@click.option("--deadline", "soft_deadline_seconds", type=float, default=None,
              help="Stop claiming after this many seconds (default: soft_deadline_seconds config)")
@click.pass_obj
def worker_run(obj, max_jobs, concurrency, soft_deadline_seconds):
    if concurrency is not None and concurrency < 1:
        _fail("concurrency must be >= 1")
    try:
        stats = process_jobs(
            db_path=obj["db"],
            max_jobs=max_jobs,
            concurrency=concurrency,
            soft_deadline_seconds=soft_deadline_seconds,
        )
    except FAILURES as e:
        _fail(e)
    _echo_json(stats)


@worker_group.command("start", help="Process batches continuously until Ctrl+C")
@click.option("--concurrency", type=int, default=None)
@click.option("--max-jobs", type=int, default=None)
@click.pass_obj
def worker_start(obj, concurrency, max_jobs):
    click.secho("Starting workers. Press Ctrl+C to stop…", fg="cyan")
    start_workers(db_path=obj["db"], concurrency=concurrency, max_jobs=max_jobs)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Alerts ----------
@cli.group("alerts", help="Alert queue")
def alerts_group():
    pass


@alerts_group.command("send")
@click.option("--limit", type=int, default=None, help="Default: alert_batch_limit config")
@click.option("--slack-webhook", envvar="CAMPAIGNWATCH_SLACK_WEBHOOK", default=None,
              help="Post to this Slack webhook instead of logging")
@click.pass_obj
def alerts_send(obj, limit, slack_webhook):
    conn = connect_db(obj["db"])
    try:
        with (SlackWebhookTransport(slack_webhook) if slack_webhook else ConsoleTransport()) as transport:
            _echo_json(send_alerts(conn, transport, limit=limit))
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


@alerts_group.command("dedupe")
@click.option("--campaign", "campaign_id", default=None, help="Only this campaign")
@click.pass_obj
def alerts_dedupe(obj, campaign_id):
    conn = connect_db(obj["db"])
    try:
        _echo_json(dedupe_alerts(conn, campaign_id))
    except FAILURES as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(obj):
    conn = connect_db(obj["db"])
    try:
        _echo_json(get_config(conn))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(obj, key, value):
    conn = connect_db(obj["db"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()

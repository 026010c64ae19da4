"""
Email notifications for IdP User Sync.

Failure reports for runs that could not complete (configuration, store,
group filter or unexpected errors) and an optional summary of successful
imports, sent over SMTP.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from IdP User Sync."


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed import run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "IdP User Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER
    ])

    return send_email(f"IdP User Sync Alert: {title}", '\n'.join(body_lines), config)


def send_filter_error_notification(pattern: str, error_message: str, config: Dict[str, Any]) -> bool:
    """Report a group pattern that does not compile; no user was touched."""
    return send_failure_notification(
        "Invalid Group Pattern",
        error_message,
        config,
        {
            'Component': 'Group selection',
            'Pattern': pattern,
            'Impact': 'Import aborted before any user was processed'
        }
    )


def send_configuration_error(error_message: str, config_path: Optional[str], config: Dict[str, Any]) -> bool:
    """
    Send notification for configuration errors.

    Args:
        error_message: Configuration error description
        config_path: Path to configuration file
        config: Notification configuration (may be partial)

    Returns:
        True if notification sent successfully
    """
    return send_failure_notification(
        "Configuration Error",
        error_message,
        config,
        {
            'Component': 'Configuration',
            'Config Path': config_path or 'default',
            'Impact': 'Import did not start'
        }
    )


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a successful import.

    Args:
        sync_stats: Run statistics from the orchestrator
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    runtime_seconds = sync_stats.get('runtime_seconds', 0)
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        runtime_str = f"{minutes}m {runtime_seconds % 60:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"

    body_lines = [
        "IdP User Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Import completed successfully!",
        "",
        "Statistics:",
        f"  Total runtime: {runtime_str}",
        f"  Groups imported: {sync_stats.get('groups', 0)}",
        f"  Users listed: {sync_stats.get('listed', 0)}",
        f"  Users imported: {sync_stats.get('imported', 0)}",
        f"  Users rejected: {sync_stats.get('rejected', 0)}",
        f"  Users reactivated: {sync_stats.get('activated', 0)}",
        f"  Users deactivated: {sync_stats.get('deactivated', 0)}",
        f"  Unresolved managers: {sync_stats.get('unresolved_managers', 0)}",
        "",
        FOOTER
    ]

    return send_email("IdP User Sync: Successful Completion", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    test_body = """This is a test email from IdP User Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(email_to)
    )

    result = send_email("IdP User Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result

"""
Transactional Email Service.

WHAT:
    Sends the checkout lifecycle emails through Resend:
    - Customer: order confirmation, order modified, tracking update, cart recap
    - Store owner: new order (with shipping label), order modified, label
      available, return request
    - Admin: errors that need a human (failed Boxtal order, refund to issue)

WHY:
    Emails are side effects of webhooks and must never make a webhook fail:
    every method returns an EmailResult and logs instead of raising.

DESIGN:
    - Inline-styled HTML with a plain text fallback
    - Optional PDF attachments (shipping labels)
    - Without RESEND_API_KEY the email is logged, not sent (local dev, tests)

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
"""

import html
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import resend

logger = logging.getLogger(__name__)


EMAIL_HEADER = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin: 0; padding: 0; background-color: #f9fafb; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
  <table role="presentation" style="width: 100%; border-collapse: collapse;">
    <tr><td align="center" style="padding: 32px 16px;">
      <table role="presentation" style="width: 100%; max-width: 600px; background-color: #ffffff; border-radius: 12px;">
        <tr><td style="padding: 28px 32px;">
          <h1 style="margin: 0 0 16px; font-size: 20px; color: #111827;">{title}</h1>
"""

EMAIL_FOOTER = """
        </td></tr>
        <tr><td style="padding: 16px 32px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px;">
          PayLive - paiement et livraison pour vos lives shopping
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>
"""


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipients: Optional[List[str]] = None


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


def _format_eur(cents: Optional[int]) -> str:
    return f"{(cents or 0) / 100:.2f} €".replace(".", ",")


def _lines_html(line_items: List[Dict[str, Any]]) -> str:
    rows = []
    for item in line_items:
        label = html.escape(str(item.get("reference", "")))
        if item.get("description"):
            label += f" ({html.escape(str(item['description']))})"
        rows.append(f"<li>{label} x {int(item.get('quantity') or 1)}</li>")
    return "<ul>" + "".join(rows) + "</ul>" if rows else ""


def _wrap(title: str, body_html: str) -> str:
    return EMAIL_HEADER.format(title=html.escape(title)) + body_html + EMAIL_FOOTER


class EmailService:
    """
    Sends PayLive transactional emails via Resend.

    Usage:
        service = EmailService.from_settings(get_settings())
        await service.send_customer_confirmation(...)
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        from_email: str = "PayLive <no-reply@paylive.cc>",
        admin_email: Optional[str] = None,
        frontend_url: str = "https://paylive.cc",
    ):
        self.resend_api_key = resend_api_key
        self.from_email = from_email
        self.admin_email = admin_email
        self.frontend_url = frontend_url.rstrip("/")

        self.resend_client = None
        if resend_api_key:
            resend.api_key = resend_api_key
            self.resend_client = resend
            logger.info("[EMAIL] Resend client initialized")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            resend_api_key=settings.RESEND_API_KEY,
            from_email=settings.RESEND_FROM_EMAIL,
            admin_email=settings.ADMIN_EMAIL,
            frontend_url=settings.FRONTEND_URL,
        )

    async def _send_email(
        self,
        to: List[str],
        subject: str,
        html_body: str,
        text: str,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> EmailResult:
        to = [address for address in to if address]
        if not to:
            logger.warning(f"[EMAIL] No recipient for: {subject}")
            return EmailResult(success=False, error="no recipient")

        if not self.resend_client:
            logger.warning(f"[EMAIL] Resend not configured, would send: {subject} to {to}")
            return EmailResult(success=True, message_id=None, recipients=to)

        params: Dict[str, Any] = {
            "from": self.from_email,
            "to": to,
            "subject": subject,
            "html": html_body,
            "text": text,
        }
        if attachments:
            params["attachments"] = [
                {"filename": a.filename, "content": list(a.content), "content_type": a.content_type}
                for a in attachments
            ]

        try:
            response = self.resend_client.Emails.send(params)
            message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
            logger.info(f"[EMAIL] Sent: {subject} to {to}, id={message_id}")
            return EmailResult(success=True, message_id=message_id, recipients=to)
        except Exception as e:
            logger.exception(f"[EMAIL] Failed to send email: {e}")
            return EmailResult(success=False, error=str(e), recipients=to)

    # =========================================================================
    # CUSTOMER
    # =========================================================================

    async def send_customer_confirmation(
        self,
        to: str,
        customer_name: Optional[str],
        store_name: str,
        line_items: List[Dict[str, Any]],
        amount_cents: int,
        delivery_method: Optional[str],
        tracking_url: Optional[str] = None,
        credited_cents: int = 0,
    ) -> EmailResult:
        subject = f"Votre commande chez {store_name} est confirmée"
        body = f"<p>Bonjour {html.escape(customer_name or '')},</p>"
        body += f"<p>Merci pour votre achat chez <strong>{html.escape(store_name)}</strong>.</p>"
        body += _lines_html(line_items)
        body += f"<p>Total payé : {_format_eur(amount_cents)}</p>"
        if credited_cents > 0:
            body += (
                f"<p>Certains articles n'étaient plus disponibles : "
                f"{_format_eur(credited_cents)} ont été ajoutés à votre avoir.</p>"
            )
        if delivery_method == "store_pickup":
            body += "<p>Votre commande sera à retirer en boutique.</p>"
        elif tracking_url:
            body += f'<p><a href="{html.escape(tracking_url)}">Suivre mon colis</a></p>'
        text = f"Commande confirmée chez {store_name}. Total payé : {_format_eur(amount_cents)}."
        return await self._send_email([to], subject, _wrap(subject, body), text)

    async def send_customer_order_modified(
        self,
        to: str,
        customer_name: Optional[str],
        store_name: str,
        line_items: List[Dict[str, Any]],
        amount_cents: int,
    ) -> EmailResult:
        subject = f"Votre commande chez {store_name} a été modifiée"
        body = f"<p>Bonjour {html.escape(customer_name or '')},</p>"
        body += "<p>Votre commande a bien été mise à jour. Nouveau contenu :</p>"
        body += _lines_html(line_items)
        body += f"<p>Montant réglé pour cette modification : {_format_eur(amount_cents)}</p>"
        text = f"Commande modifiée chez {store_name}."
        return await self._send_email([to], subject, _wrap(subject, body), text)

    async def send_customer_tracking_update(
        self,
        to: str,
        customer_name: Optional[str],
        store_name: Optional[str],
        status: str,
        message: Optional[str] = None,
        tracking_url: Optional[str] = None,
    ) -> EmailResult:
        subject = f"Suivi de votre colis : {status}"
        body = f"<p>Bonjour {html.escape(customer_name or '')},</p>"
        body += f"<p>Votre commande {html.escape(store_name or '')} a changé de statut : <strong>{html.escape(status)}</strong>.</p>"
        if message:
            body += f"<p>{html.escape(message)}</p>"
        if tracking_url:
            body += f'<p><a href="{html.escape(tracking_url)}">Suivre mon colis</a></p>'
        text = f"Nouveau statut de votre colis : {status}."
        return await self._send_email([to], subject, _wrap(subject, body), text)

    async def send_cart_recap(
        self,
        to: str,
        store_name: str,
        items: List[Dict[str, Any]],
        total_eur: float,
        checkout_url: str,
    ) -> EmailResult:
        subject = f"Votre panier chez {store_name}"
        body = _lines_html(items)
        body += f"<p>Total : {total_eur:.2f} €</p>".replace(".", ",")
        body += f'<p><a href="{html.escape(checkout_url)}">Finaliser ma commande</a></p>'
        text = f"Votre panier chez {store_name} : {total_eur:.2f} EUR. {checkout_url}"
        return await self._send_email([to], subject, _wrap(subject, body), text)

    # =========================================================================
    # STORE OWNER
    # =========================================================================

    async def send_store_owner_notification(
        self,
        to: Optional[str],
        store_name: str,
        customer_name: Optional[str],
        line_items: List[Dict[str, Any]],
        earnings_cents: int,
        delivery_method: Optional[str],
        shipment_id: Optional[str] = None,
        label: Optional[EmailAttachment] = None,
    ) -> EmailResult:
        subject = f"Nouvelle commande sur {store_name}"
        body = f"<p>Nouvelle commande de {html.escape(customer_name or 'un client')} :</p>"
        body += _lines_html(line_items)
        body += f"<p>Montant pour la boutique : {_format_eur(earnings_cents)}</p>"
        if delivery_method == "store_pickup":
            body += "<p>Retrait en boutique : aucun colis à expédier.</p>"
        elif label:
            body += "<p>L'étiquette d'expédition est jointe à cet email.</p>"
        elif shipment_id:
            body += "<p>L'étiquette d'expédition vous sera envoyée dès qu'elle sera disponible.</p>"
        text = f"Nouvelle commande sur {store_name}."
        return await self._send_email(
            [to], subject, _wrap(subject, body), text, attachments=[label] if label else None
        )

    async def send_store_owner_order_modified(
        self,
        to: Optional[str],
        store_name: str,
        customer_name: Optional[str],
        line_items: List[Dict[str, Any]],
        label: Optional[EmailAttachment] = None,
    ) -> EmailResult:
        subject = f"Commande modifiée sur {store_name}"
        body = f"<p>{html.escape(customer_name or 'Un client')} a modifié sa commande. Nouveau contenu :</p>"
        body += _lines_html(line_items)
        body += "<p>L'ancienne étiquette a été annulée.</p>"
        text = f"Commande modifiée sur {store_name}."
        return await self._send_email(
            [to], subject, _wrap(subject, body), text, attachments=[label] if label else None
        )

    async def send_store_owner_label(
        self,
        to: Optional[str],
        store_name: str,
        shipment_id: str,
        label: EmailAttachment,
    ) -> EmailResult:
        subject = f"Étiquette disponible ({store_name})"
        body = f"<p>L'étiquette de la commande {html.escape(shipment_id)} est jointe.</p>"
        text = f"Étiquette disponible pour la commande {shipment_id}."
        return await self._send_email([to], subject, _wrap(subject, body), text, attachments=[label])

    async def send_return_request(
        self,
        store_owner_email: Optional[str],
        store_name: str,
        shipment_ref: str,
        customer_stripe_id: str,
        reason: Optional[str] = None,
    ) -> EmailResult:
        subject = f"Demande de retour ({store_name})"
        body = f"<p>Le client {html.escape(customer_stripe_id)} demande le retour de la commande {html.escape(shipment_ref)}.</p>"
        if reason:
            body += f"<p>Motif : {html.escape(reason)}</p>"
        text = f"Demande de retour pour la commande {shipment_ref}."
        return await self._send_email(
            [store_owner_email, self.admin_email], subject, _wrap(subject, body), text
        )

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def send_admin_error(
        self,
        subject: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        body = f"<p>{html.escape(message)}</p>"
        if context:
            rows = "".join(
                f"<tr><td><code>{html.escape(str(k))}</code></td><td>{html.escape(str(v))}</td></tr>"
                for k, v in context.items()
            )
            body += f"<table>{rows}</table>"
        text = message + ("\n" + "\n".join(f"{k}: {v}" for k, v in (context or {}).items()))
        return await self._send_email([self.admin_email], f"[PayLive] {subject}", _wrap(subject, body), text)

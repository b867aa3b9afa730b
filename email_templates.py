"""
HTML email templates for Tajer.

Every public function returns a complete HTML string ready for sending via
``EmailNotifier`` in ``notifications.py``.

Design tokens:
  - Primary accent: #007bff (blue)
  - Background:     #f5f7fa
  - Card:           #ffffff
  - Text dark:      #1f2937
  - Text muted:     #4b5563 / #6b7280
  - Font stack:     Arial, sans-serif

All styles are inlined for email-client compatibility. Uploaded repair
photos are the only external resources referenced.
"""

from html import escape as _esc


# ---------------------------------------------------------------------------
# Shared layout helpers
# ---------------------------------------------------------------------------

def _header():
    return (
        '<div style="text-align:center;margin-bottom:30px;">'
        '<h1 style="color:#007bff;font-size:28px;margin:0;font-family:Arial,sans-serif;font-weight:700;">Tajer</h1>'
        '<p style="color:#6b7280;margin:5px 0 0;font-size:14px;">Shop, rent and repair, all in one place</p>'
        '</div>'
    )


def _footer():
    return (
        '<div style="text-align:center;margin-top:30px;padding-top:20px;border-top:1px solid #e5e7eb;color:#9ca3af;font-size:12px;line-height:1.6;">'
        '<p style="margin:0 0 4px;">This is an automated message from <strong>Tajer</strong>.</p>'
        '<p style="margin:0;"><a href="mailto:support@tajernow.com" style="color:#9ca3af;">support@tajernow.com</a></p>'
        '</div>'
    )


def _wrap(body_html):
    """Wrap inner content in the common email shell (background, card, header, footer)."""
    return (
        '<!DOCTYPE html>'
        '<html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1.0">'
        '<title>Tajer</title></head>'
        '<body style="margin:0;padding:0;background-color:#f5f7fa;">'
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:40px 20px;color:#1f2937;">'
        + _header()
        + '<div style="background:#ffffff;border-radius:12px;padding:30px;box-shadow:0 1px 3px rgba(0,0,0,0.1);">'
        + body_html
        + '</div>'
        + _footer()
        + '</div></body></html>'
    )


def _money(amount):
    try:
        return '${:,.2f}'.format(float(amount))
    except (TypeError, ValueError):
        return '$0.00'


def _title(text):
    return '<h2 style="color:#1f2937;margin:0 0 12px;font-size:22px;">{}</h2>'.format(_esc(text))


def _para(html_text, muted=False):
    size = 'font-size:14px;' if muted else ''
    return '<p style="color:#4b5563;line-height:1.6;{}">{}</p>'.format(size, html_text)


def _greeting(name):
    return _para('Hi {},'.format(_esc(str(name)) if name else 'there'))


def _detail_row(label, value, is_last=False):
    border = 'border-top:1px solid #bfdbfe;' if is_last else ''
    weight = '700' if is_last else '600'
    return (
        '<tr style="{border}">'
        '<td style="padding:8px 0;color:#6b7280;font-size:14px;">{label}</td>'
        '<td style="padding:8px 0;color:#1f2937;font-size:14px;font-weight:{weight};text-align:right;">{value}</td>'
        '</tr>'
    ).format(border=border, label=_esc(str(label)), value=_esc(str(value)), weight=weight)


def _detail_table(rows, emphasize_last=False):
    """Blue-tinted detail box.  *rows* is a list of (label, value) tuples."""
    inner = ''
    for i, (label, value) in enumerate(rows):
        inner += _detail_row(label, value, is_last=emphasize_last and i == len(rows) - 1)
    return (
        '<div style="background:#eff6ff;border:1px solid #bfdbfe;border-radius:8px;padding:20px;margin:20px 0;">'
        '<table style="width:100%;border-collapse:collapse;">'
        + inner
        + '</table></div>'
    )


def _button(url, label, color='#007bff'):
    return (
        '<a href="{url}" style="display:inline-block;background:{color};color:#ffffff;'
        'text-decoration:none;padding:12px 28px;border-radius:8px;font-size:15px;'
        'font-weight:600;margin:6px;">{label}</a>'
    ).format(url=_esc(str(url)), color=color, label=_esc(str(label)))


def _buttons(*buttons):
    return '<div style="text-align:center;margin:24px 0 12px;">' + ''.join(buttons) + '</div>'


def _quote_block(text):
    return (
        '<blockquote style="border-left:3px solid #007bff;padding-left:10px;margin:10px 0;color:#374151;">'
        '{}</blockquote>'
    ).format(_esc(str(text or '')))


def _image_strip(image_urls):
    if not image_urls:
        return ''
    images = ''.join(
        '<img src="{}" alt="repair" style="width:120px;border-radius:8px;border:1px solid #ddd;margin:4px;">'.format(_esc(str(url)))
        for url in image_urls
    )
    return '<div style="margin-top:15px;"><p style="color:#4b5563;">Attached images:</p><div>{}</div></div>'.format(images)


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

def repair_received_html(description, image_urls, job_code):
    """Requester confirmation right after a repair request is submitted."""
    body = _title('We received your repair request')
    body += _greeting(None)
    body += _para('We&rsquo;ve received your repair request:')
    body += _quote_block(description)
    body += _image_strip(image_urls)
    body += _detail_table([('Job code', job_code)])
    body += _para(
        'Our service providers will review your request shortly and send you a quote. '
        'Keep your job code handy, you&rsquo;ll need it to check on the job.', muted=True)
    return _wrap(body)


def quote_received_html(job_code, description, provider_name, provider_city, price_quote,
                        deposit_amount, accept_url, reject_url):
    body = _title('You have a quote for your repair')
    body += _greeting(None)
    body += _para('A service provider has quoted your repair request:')
    body += _quote_block(description)
    body += _detail_table([
        ('Job code', job_code),
        ('Provider', provider_name or 'Service provider'),
        ('City', provider_city or '-'),
        ('Deposit due on acceptance', _money(deposit_amount)),
        ('Quoted price', _money(price_quote)),
    ], emphasize_last=True)
    body += _buttons(_button(accept_url, 'Accept quote'), _button(reject_url, 'Reject', color='#6b7280'))
    return _wrap(body)


def provider_quote_submitted_html(provider_name, job_code, description, price_quote):
    body = _title('Your quote was sent')
    body += _greeting(provider_name)
    body += _para('We passed your quote on to the customer. We&rsquo;ll email you when they respond.')
    body += _quote_block(description)
    body += _detail_table([
        ('Job code', job_code),
        ('Your quote', _money(price_quote)),
    ])
    body += _para('Use the job code with your email address to look the job up at any time.', muted=True)
    return _wrap(body)


def quote_accepted_html(provider_name, job_code, customer_address, preferred_time):
    body = _title('Your quote was accepted')
    body += _greeting(provider_name)
    body += _para('The customer accepted your quote. Once their deposit is paid you can head over.')
    body += _detail_table([
        ('Job code', job_code),
        ('Address', customer_address),
        ('Preferred time', preferred_time),
    ])
    return _wrap(body)


def provider_onboarding_html(provider_name, onboarding_url):
    body = _title('Set up your payouts')
    body += _greeting(provider_name)
    body += _para(
        'To receive payment for your repair jobs, finish setting up your payout account with our '
        'payment partner. It only takes a few minutes.')
    body += _buttons(_button(onboarding_url, 'Set up payouts'))
    body += _para('This link expires shortly. If it stops working, request a new one from the provider page.', muted=True)
    return _wrap(body)


def paid_repair_html(description, customer_address, preferred_time, requester_email):
    """Provider notice that the customer paid the deposit."""
    body = _title('New paid repair request')
    body += _para('A customer has paid the deposit for their repair. Please prepare to visit the location below:')
    body += _detail_table([
        ('Address', customer_address),
        ('Preferred time', preferred_time),
        ('Description', description),
        ('Customer email', requester_email),
    ])
    body += _para('Please reach out to the customer to confirm your visit.', muted=True)
    return _wrap(body)


def completion_confirmation_html(job_code, provider_name, final_price, deposit_amount, confirm_url):
    body = _title('Please confirm your repair is complete')
    body += _greeting(None)
    body += _para('{} marked your repair as completed.'.format(_esc(provider_name or 'Your provider')))
    remaining = max(0.0, float(final_price or 0) - float(deposit_amount or 0))
    body += _detail_table([
        ('Job code', job_code),
        ('Final price', _money(final_price)),
        ('Deposit already paid', _money(deposit_amount)),
        ('Remaining to be charged', _money(remaining)),
    ], emphasize_last=True)
    body += _buttons(_button(confirm_url, 'Confirm completion'))
    body += _para('Your saved card is charged the remaining amount once you confirm.', muted=True)
    return _wrap(body)


def final_price_review_html(job_code, provider_name, final_price, materials_cost, accept_url, reject_url):
    body = _title('Your provider updated the price')
    body += _greeting(None)
    body += _para('After inspecting the job, {} revised the price:'.format(_esc(provider_name or 'your provider')))
    rows = [('Job code', job_code)]
    if materials_cost is not None:
        rows.append(('Materials', _money(materials_cost)))
    rows.append(('New final price', _money(final_price)))
    body += _detail_table(rows, emphasize_last=True)
    body += _buttons(_button(accept_url, 'Accept new price'), _button(reject_url, 'Reject', color='#6b7280'))
    return _wrap(body)


def repair_receipt_html(job_code, final_price, deposit_amount, charged_amount):
    body = _title('Payment receipt')
    body += _greeting(None)
    body += _para('Thanks for confirming. Your repair is complete and has been paid.')
    body += _detail_table([
        ('Job code', job_code),
        ('Final price', _money(final_price)),
        ('Deposit', _money(deposit_amount)),
        ('Charged today', _money(charged_amount)),
    ], emphasize_last=True)
    return _wrap(body)


def repair_confirmed_provider_html(provider_name, job_code, final_price):
    body = _title('The customer confirmed the job')
    body += _greeting(provider_name)
    body += _para(
        'The customer confirmed job <strong>{}</strong> ({}). Your payout is released as soon as your '
        'payout account is active.'.format(_esc(job_code), _money(final_price)))
    return _wrap(body)


def payout_sent_html(provider_name, job_code, amount):
    body = _title('Payout sent')
    body += _greeting(provider_name)
    body += _para('We sent your earnings for job <strong>{}</strong>.'.format(_esc(job_code)))
    body += _detail_table([('Payout', _money(amount))], emphasize_last=True)
    body += _para('Funds usually reach your bank within a few business days.', muted=True)
    return _wrap(body)


# ---------------------------------------------------------------------------
# Rentals
# ---------------------------------------------------------------------------

def reservation_received_html(property_title, tenant_name, tenant_email, start_date, end_date,
                              offer_price, message):
    body = _title('New reservation request')
    body += _para('You have a new offer on <strong>{}</strong>.'.format(_esc(property_title)))
    body += _detail_table([
        ('Tenant', tenant_name or '-'),
        ('Email', tenant_email),
        ('From', start_date),
        ('To', end_date),
        ('Offer', _money(offer_price)),
    ], emphasize_last=True)
    if message:
        body += _quote_block(message)
    body += _para('Accept, reject or ask for more documents from your landlord dashboard.', muted=True)
    return _wrap(body)


_RESERVATION_MESSAGES = {
    'accepted_pending_verification': 'Your offer was accepted! Please upload a photo ID to continue to payment.',
    'accepted': 'Your offer was accepted and your ID is on file. You can now complete payment.',
    'documents_requested': 'The landlord asked for more documents before deciding on your offer.',
    'rejected': 'Unfortunately the landlord declined your offer.',
    'paid': 'Your payment went through. Your stay is booked!',
}


def reservation_update_html(tenant_name, property_title, status, note=None, action_url=None,
                            action_label=None):
    body = _title('Update on your reservation')
    body += _greeting(tenant_name)
    body += _para('<strong>{}</strong>'.format(_esc(property_title)))
    body += _para(_esc(_RESERVATION_MESSAGES.get(status, 'Your reservation status is now {}.'.format(status))))
    if note:
        body += _quote_block(note)
    if action_url:
        body += _buttons(_button(action_url, action_label or 'Continue'))
    return _wrap(body)


# ---------------------------------------------------------------------------
# Shop
# ---------------------------------------------------------------------------

def order_received_html(vendor_name, guest_name, guest_contact, order_id, barcode, total, items):
    """Vendor alert for a new in-store reservation. *items* is a list of (name, quantity)."""
    body = _title('New reservation received')
    body += _detail_table([
        ('Vendor', vendor_name or '-'),
        ('Guest', guest_name or '-'),
        ('Contact', guest_contact or '-'),
        ('Order ID', order_id),
        ('Barcode', barcode),
        ('Total', _money(total)),
    ], emphasize_last=True)
    rows = ''.join('<li>{} (x{})</li>'.format(_esc(str(name)), int(qty)) for name, qty in items)
    body += '<h3 style="color:#1f2937;font-size:16px;">Products</h3><ul style="color:#4b5563;">{}</ul>'.format(rows)
    return _wrap(body)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

def welcome_html(name):
    body = _title('Welcome to Tajer!')
    body += _greeting(name)
    body += _para('Your account is ready. Browse local shops, book rentals and get things fixed.')
    return _wrap(body)


def password_reset_html(name, reset_url):
    body = _title('Reset your password')
    body += _greeting(name)
    body += _para('Click the button below to reset your password. The link expires in one hour.')
    body += _buttons(_button(reset_url, 'Reset password'))
    body += _para('If you didn&rsquo;t ask for this, you can ignore this email.', muted=True)
    return _wrap(body)

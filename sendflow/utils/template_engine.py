"""
Merge tag personalization for workflow emails
"""


def personalize(content, contact):
    """Replace merge tags"""
    if not content:
        return content

    first_name = contact.get('first_name', '')
    last_name = contact.get('last_name', '')
    full_name = f"{first_name or ''} {last_name or ''}".strip()

    replacements = {
        '{{first_name}}': first_name,
        '{{last_name}}': last_name,
        '{{name}}': full_name,
        '{{email}}': contact.get('email', ''),
        '{{FIRST_NAME}}': first_name,
        '{{LAST_NAME}}': last_name,
        '*|FNAME|*': first_name,
        '*|LNAME|*': last_name,
    }

    for tag, value in replacements.items():
        content = content.replace(tag, str(value or ''))

    return content

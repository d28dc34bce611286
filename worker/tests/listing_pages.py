"""Builders for directory result pages used across tests."""


def listing_block(
    name,
    slug,
    street="Ermou 10",
    city="Athens",
    postal_code="10563",
    phone="210 3234567",
    email=None,
    website=None,
    latitude="37.9755",
    longitude="23.7348",
):
    email_meta = f'<meta itemprop="email" content="{email}">' if email else ""
    website_link = f'<a itemprop="url" href="{website}">Website</a>' if website else ""
    phone_span = f'<span itemprop="telephone">{phone}</span>' if phone else ""
    return f"""
<div class="AdvItemBox">
  <h2 class="CompanyName"><a class="nav-company" href="/en/{slug}/" title="{name}">{name}</a></h2>
  <div class="AdvCategory">Bakeries</div>
  <div itemprop="address" itemscope>
    <meta itemprop="streetAddress" content="{street}">
    <meta itemprop="addressLocality" content="{city}">
    <meta itemprop="postalCode" content="{postal_code}">
    <meta itemprop="addressRegion" content="Attica">
  </div>
  {phone_span}
  {email_meta}
  {website_link}
  <meta itemprop="latitude" content="{latitude}">
  <meta itemprop="longitude" content="{longitude}">
</div>
"""


def results_page(blocks):
    return "<html><body><div id='results'>" + "".join(blocks) + "</div></body></html>"


def bakery_page(count, start=1):
    blocks = [
        listing_block(f"Bakery {index}", f"bakery-{index}", street=f"Ermou {index}")
        for index in range(start, start + count)
    ]
    return results_page(blocks)
